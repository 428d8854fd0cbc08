"""Logic-less, mustache-like templating for JSON-shaped data."""

from __future__ import annotations

import copy
import json
import logging
import math
import os
import re
from typing import Callable
from typing import Mapping
from typing import NamedTuple
from typing import Optional
from typing import Protocol
from typing import Sequence
from typing import TypeAlias

from jsonpath import JSONPathEnvironment
from jsonpath import JSONPathError

__all__ = (
    "Array",
    "compile_template",
    "Interpolation",
    "InvalidTemplateError",
    "JSONPathEngine",
    "Literal",
    "Object",
    "PathEngine",
    "PathError",
    "PathRef",
    "RawSubstitution",
    "render",
    "RenderError",
    "Section",
    "Template",
    "TemplateError",
    "TemplatePathError",
    "TemplateSyntaxError",
    "Unquote",
    "unquote",
    "UnquoteError",
)

logger = logging.getLogger(__name__)


class Template:
    def __init__(self, template: object, *, paths: PathEngine | None = None):
        self.paths: PathEngine = paths or JSONPathEngine()
        self.root: Node = Compiler(self.paths).compile(template)
        logger.debug(f"Compiled template -> {type(self.root).__name__}")

    def render(self, data: object) -> object:
        """Render this template against _data_.

        The result never shares mappings or lists with _data_.
        """
        try:
            return self.root.render(data, data, self.paths)
        except RenderError as err:
            logger.debug(f"Render failed: {err}")
            raise


def compile_template(template: object, *, paths: PathEngine | None = None) -> Template:
    """Compile _template_, a JSON-like value, ready for rendering."""
    return Template(template, paths=paths)


def render(template: Template, data: object) -> object:
    """Render a compiled _template_ with _data_ as both root and current document."""
    return template.render(data)


class TemplateError(Exception):
    """Base class for all template compile and render errors."""

    code = ""


class TemplateSyntaxError(TemplateError):
    """An exception raised when a template string contains malformed markup."""

    code = "invalid"

    def __init__(self, *args: object, source: str, index: int):
        super().__init__(*args)
        self.source = source
        self.index = index

    def __str__(self) -> str:
        context = self.error_context(self.source, self.index)

        if not context:
            return super().__str__()

        line, col, current = context

        position = f"{current!r}:{line}:{col}"
        pad = " " * len(str(line))
        pointer = (" " * col) + "^"

        return os.linesep.join(
            [
                self.args[0],
                f"{pad} -> {position}",
                f"{pad} |",
                f"{line} | {current}",
                f"{pad} | {pointer} {self.args[0]}",
            ]
        )

    def error_context(self, text: str, index: int) -> tuple[int, int, str] | None:
        """Return the line number, column number and current line of text."""
        lines = text.splitlines(keepends=True)
        cumulative_length = 0
        target_line_index = -1

        for i, line in enumerate(lines):
            cumulative_length += len(line)
            if index < cumulative_length:
                target_line_index = i
                break

        if target_line_index == -1:
            return None

        line_number = target_line_index + 1  # 1-based
        column_number = index - (cumulative_length - len(lines[target_line_index]))
        current_line = lines[target_line_index].rstrip()
        return (line_number, column_number, current_line)


class TemplatePathError(TemplateSyntaxError):
    """An exception raised when the text of a marker is not a valid path."""

    code = "invalid_path"


class InvalidTemplateError(TemplateError):
    """An exception raised when well formed markers are used in the wrong place."""

    code = "invalid_template"


class RenderError(TemplateError):
    """An exception raised when a path does not resolve to a renderable value."""

    code = "cannot_render"

    def __init__(self, *args: object, path: object = None):
        super().__init__(*args)
        self.path = path


class UnquoteError(RenderError):
    """An exception raised when a string can not be parsed as a JSON scalar."""

    code = "cannot_unquote"


class PathError(Exception):
    """An exception raised by a path engine when compiling or evaluating a path."""


class PathEngine(Protocol):
    """The interface to a path query language."""

    def compile(self, expression: str) -> object:
        """Compile _expression_ or raise a `PathError`."""
        ...

    def evaluate(self, root: object, current: object, path: object) -> Sequence[object]:
        """Return all values matched by a compiled _path_, in document order."""
        ...


class JSONPathEngine:
    """A `PathEngine` backed by python-jsonpath.

    `$` selects the current document. The root document is passed as the
    filter context, so filter expressions can refer to it using `_`.
    """

    def __init__(self, env: JSONPathEnvironment | None = None):
        self.env = env or JSONPathEnvironment()

    def compile(self, expression: str) -> object:
        try:
            return self.env.compile(expression.strip())
        except JSONPathError as err:
            raise PathError(str(err)) from err

    def evaluate(self, root: object, current: object, path: object) -> Sequence[object]:
        try:
            return path.findall(
                _as_document(current), filter_context=_as_document(root)
            )
        except JSONPathError as err:
            raise PathError(str(err)) from err


def _as_document(value: object) -> object:
    # findall decodes str arguments as JSON text.
    if isinstance(value, str):
        return json.dumps(value)
    return value


class Node(Protocol):
    """The interface for a compiled template node."""

    def render(self, root: object, current: object, paths: PathEngine) -> object:
        """Render this node with reference to the _root_ and _current_ documents."""
        ...


class PathRef(NamedTuple):
    path: object


class Literal(NamedTuple):
    value: object

    def render(self, root: object, current: object, paths: PathEngine) -> object:
        return self.value


class Interpolation(NamedTuple):
    tokens: tuple[str | PathRef, ...]

    def render(self, root: object, current: object, paths: PathEngine) -> str:
        buffer: list[str] = []
        for token in self.tokens:
            if isinstance(token, str):
                buffer.append(token)
            else:
                buffer.append(_stringify(_resolve(paths, root, current, token.path)))
        return "".join(buffer)


class RawSubstitution(NamedTuple):
    path: object

    def render(self, root: object, current: object, paths: PathEngine) -> object:
        return _detach(_resolve(paths, root, current, self.path))


class Unquote(NamedTuple):
    path: object

    def render(self, root: object, current: object, paths: PathEngine) -> object:
        value = _resolve(paths, root, current, self.path)
        if isinstance(value, str):
            try:
                return unquote(value)
            except UnquoteError as err:
                err.path = self.path
                raise
        return _detach(value)


class Section(NamedTuple):
    path: object
    body: Node

    def render(self, root: object, current: object, paths: PathEngine) -> list[object]:
        matches = _evaluate(paths, root, current, self.path)

        if len(matches) == 1:
            match = matches[0]
            if isinstance(match, bool):
                if match:
                    return [self.body.render(root, current, paths)]
                return []
            if not _is_array(match):
                raise RenderError(
                    f"section {self.path} matched a {type(match).__name__}, "
                    "expected an array or a boolean",
                    path=self.path,
                )
            items: Sequence[object] = match
        elif matches:
            items = matches
        else:
            raise RenderError(f"section {self.path} matched nothing", path=self.path)

        return [self.body.render(root, item, paths) for item in items]


class Object(NamedTuple):
    items: tuple[tuple[str, Node], ...]

    def render(self, root: object, current: object, paths: PathEngine) -> dict[str, object]:
        return {key: node.render(root, current, paths) for key, node in self.items}


class Array(NamedTuple):
    items: tuple[Node, ...]

    def render(self, root: object, current: object, paths: PathEngine) -> list[object]:
        return [node.render(root, current, paths) for node in self.items]


def _evaluate(
    paths: PathEngine, root: object, current: object, path: object
) -> Sequence[object]:
    try:
        return paths.evaluate(root, current, path)
    except PathError as err:
        raise RenderError(f"can't evaluate {path}: {err}", path=path) from err


def _resolve(paths: PathEngine, root: object, current: object, path: object) -> object:
    matches = _evaluate(paths, root, current, path)
    if len(matches) != 1:
        raise RenderError(
            f"expected exactly one match for {path}, found {len(matches)}",
            path=path,
        )
    return matches[0]


def _is_array(value: object) -> bool:
    return isinstance(value, Sequence) and not isinstance(value, (str, bytes))


def _detach(value: object) -> object:
    # Rendered output must not share containers with the input document.
    if isinstance(value, Mapping) or _is_array(value):
        return copy.deepcopy(value)
    return value


def _stringify(value: object) -> str:
    if isinstance(value, str):
        return value
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, Mapping) or _is_array(value):
        return json.dumps(value)
    return str(value)


_RE_INT = re.compile(r"-?[0-9]+")
_RE_FLOAT = re.compile(r"-?[0-9]+(?:\.[0-9]+)?(?:[eE][-+]?[0-9]+)?")

_KEYWORDS: dict[str, object] = {
    "true": True,
    "false": False,
    "null": None,
}


def unquote(value: str) -> object:
    """Parse _value_ as a JSON boolean, null, integer or float."""
    if value in _KEYWORDS:
        return _KEYWORDS[value]

    if _RE_INT.fullmatch(value):
        return int(value)

    if _RE_FLOAT.fullmatch(value):
        result = float(value)
        if math.isfinite(result):
            return result

    raise UnquoteError(f"can't unquote {value!r}")


class _Marker(NamedTuple):
    kind: str
    value: object


_StateFn: TypeAlias = Callable[[], Optional["_StateFn"]]

_OPEN_MARKERS: tuple[tuple[str, str], ...] = (
    ("{{{", "TRIPLE_BRACES"),
    ("{{&", "UNQUOTE"),
    ("{{#", "SECTION"),
    ("{{?", "SWITCH"),
)

_ESCAPES: tuple[tuple[str, str], ...] = (
    ("\\{{{", "{{{"),
    ("\\{{", "{{"),
)

_OPERATORS = frozenset("{&#?")


class Scanner:
    """Classify a template string as a literal, an interpolation or a marker.

    The scanner is a state machine over `mode`, one of EMPTY, LITERAL,
    INTERPOLATE, OPEN (inside an unclosed marker of kind `kind`) and CLOSED
    (a whole-string marker has been closed). `fragment` accumulates the
    current run of text or path characters, `tokens` the finished parts of
    an interpolation.
    """

    def __init__(self, source: str, compile_path: Callable[[str], object]):
        self.source = source
        self.compile_path = compile_path
        self.pos = 0
        self.start = 0
        self.mode = "EMPTY"
        self.kind = ""
        self.fragment: list[str] = []
        self.tokens: list[str | PathRef] = []
        self.path: object = None

        state: _StateFn | None = self.lex_empty
        while state is not None:
            state = state()

    @property
    def marker(self) -> _Marker:
        if self.mode == "EMPTY":
            return _Marker("LITERAL", "")

        if self.mode == "LITERAL":
            return _Marker("LITERAL", "".join(self.fragment))

        if self.mode == "INTERPOLATE":
            self.flush()
            return _Marker("INTERPOLATE", tuple(self.tokens))

        return _Marker(self.kind, self.path)

    def next(self) -> str:
        ch = self.source[self.pos]
        self.pos += 1
        return ch

    def accept_escape(self) -> bool:
        for escape, text in _ESCAPES:
            if self.source.startswith(escape, self.pos):
                self.pos += len(escape)
                self.fragment.append(text)
                return True
        return False

    def flush(self) -> None:
        if self.fragment:
            self.tokens.append("".join(self.fragment))
            self.fragment = []

    def open(self, kind: str, width: int) -> _StateFn:
        self.start = self.pos
        self.pos += width
        self.mode = "OPEN"
        self.kind = kind
        self.fragment = []
        return self.lex_marker

    def compile_fragment(self) -> object:
        text = "".join(self.fragment)
        self.fragment = []
        try:
            return self.compile_path(text)
        except PathError as err:
            raise TemplatePathError(
                f"invalid path {text.strip()!r}: {err}",
                source=self.source,
                index=self.start,
            ) from err

    def lex_empty(self) -> _StateFn | None:
        if self.pos >= len(self.source):
            return None

        if self.accept_escape():
            self.mode = "LITERAL"
            return self.lex_text

        for prefix, kind in _OPEN_MARKERS:
            if self.source.startswith(prefix, self.pos):
                return self.open(kind, len(prefix))

        if self.source.startswith("{{", self.pos):
            return self.open("INTERPOLATE", 2)

        self.mode = "LITERAL"
        self.fragment = [self.next()]
        return self.lex_text

    def lex_text(self) -> _StateFn | None:
        source = self.source

        while self.pos < len(source):
            if self.accept_escape():
                continue

            if (
                source.startswith("{{", self.pos)
                and source[self.pos + 2 : self.pos + 3] not in _OPERATORS
            ):
                self.flush()
                return self.open("INTERPOLATE", 2)

            self.fragment.append(self.next())

        return None

    def lex_marker(self) -> _StateFn | None:
        source = self.source

        while self.pos < len(source):
            if self.kind == "TRIPLE_BRACES":
                if source.startswith("}}}", self.pos):
                    self.pos += 3
                    self.path = self.compile_fragment()
                    self.mode = "CLOSED"
                    return self.lex_closed
            elif source.startswith("}}", self.pos):
                self.pos += 2

                if self.kind == "INTERPOLATE":
                    self.tokens.append(PathRef(self.compile_fragment()))
                    self.mode = "INTERPOLATE"
                    return self.lex_text

                self.path = self.compile_fragment()
                self.mode = "CLOSED"
                return self.lex_closed

            if not self.accept_escape():
                self.fragment.append(self.next())

        raise TemplateSyntaxError(
            "unterminated marker", source=self.source, index=self.start
        )

    def lex_closed(self) -> _StateFn | None:
        if self.pos < len(self.source):
            raise TemplateSyntaxError(
                f"unexpected {self.source[self.pos]!r} after marker",
                source=self.source,
                index=self.pos,
            )
        return None


_PLACEHOLDER = Literal(None)


class Compiler:
    def __init__(self, paths: PathEngine):
        self.paths = paths

    def scan(self, source: str) -> _Marker:
        return Scanner(source, self.paths.compile).marker

    def compile(self, template: object) -> Node:
        if isinstance(template, Mapping):
            return self.compile_object(template)

        if isinstance(template, str):
            return self.compile_string(template)

        if _is_array(template):
            return Array(tuple(self.compile(item) for item in template))

        return Literal(template)

    def compile_object(self, template: Mapping[object, object]) -> Node:
        items: list[tuple[str, Node]] = []

        for key, value in template.items():
            node = self.compile(value)
            target = self.compile_key(key)

            if isinstance(target, Section):
                if len(template) != 1:
                    raise InvalidTemplateError(
                        f"section {key!r} must be the only key in its object"
                    )
                return target._replace(body=node)

            items.append((target, node))

        return Object(tuple(items))

    def compile_key(self, key: object) -> str | Section:
        if not isinstance(key, str):
            raise InvalidTemplateError(f"expected a string key, found {key!r}")

        kind, value = self.scan(key)

        if kind == "LITERAL":
            return value

        if kind == "SECTION":
            return Section(value, _PLACEHOLDER)

        raise InvalidTemplateError(f"unexpected {kind.lower()} marker in key {key!r}")

    def compile_string(self, template: str) -> Node:
        kind, value = self.scan(template)

        if kind == "LITERAL":
            return Literal(value)

        if kind == "INTERPOLATE":
            return Interpolation(value)

        if kind == "TRIPLE_BRACES":
            return RawSubstitution(value)

        if kind == "UNQUOTE":
            return Unquote(value)

        raise InvalidTemplateError(
            f"unexpected {kind.lower()} marker in value {template!r}"
        )
