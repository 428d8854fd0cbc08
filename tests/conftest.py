import pytest

from json_template import PathError


class DottedPathEngine:
    """A tiny path language for tests.

    `$.a.b` walks mapping keys from the current document, `^.a` starts at
    the root document, `*` expands every item of an array and `!` fails
    at evaluation time.
    """

    def compile(self, expression: str) -> tuple[str, ...]:
        text = expression.strip()
        segments = tuple(text.split("."))

        if not text or any(not s or " " in s for s in segments):
            raise PathError(f"bad path {text!r}")

        if segments[0] == "$":
            return segments[1:]
        return segments

    def evaluate(
        self, root: object, current: object, path: tuple[str, ...]
    ) -> list[object]:
        if path[:1] == ("^",):
            nodes, path = [root], path[1:]
        else:
            nodes = [current]

        for segment in path:
            if segment == "!":
                raise PathError("boom")

            found: list[object] = []
            for node in nodes:
                if segment == "*" and isinstance(node, list):
                    found.extend(node)
                elif isinstance(node, dict) and segment in node:
                    found.append(node[segment])
            nodes = found

        return nodes


@pytest.fixture
def paths() -> DottedPathEngine:
    return DottedPathEngine()
