"""Attribute paths into the evaluated flake namespace.

An ``AttrPath`` is an immutable sequence of segments. A ``str`` segment is
an attribute name, an ``int`` segment is a list index. The display form
joins segments with ``.`` and writes indices as ``[i]``::

    packages.x86_64-linux.hello
    home.packages.[3]
    home.packages.[3].meta

Names that would be ambiguous in that form (empty, containing ``.``,
``[``, ``]``, ``"`` or ``\\``) are written double-quoted, so the name ``3``
and the index ``[3]`` never collide. The empty path is the flake root and
displays as ``""``.

The evaluator cannot address list elements through an installable
reference, so paths with index segments are split by
``to_evaluator_expression`` into the nearest index-free prefix plus a Nix
lambda that walks the remaining segments.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

from flaketree.core.errors import MalformedPathError

Segment = str | int

_QUOTE_TRIGGERS = frozenset('.[]"\\')
_NIX_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_'-]*$")
_NIX_KEYWORDS = frozenset(
    {"if", "then", "else", "assert", "with", "let", "in", "rec", "inherit", "or"}
)


@dataclass(frozen=True, slots=True)
class AttrPath:
    """Hierarchical address of a node. Hashable, compares by segments."""

    segments: tuple[Segment, ...] = ()

    @classmethod
    def root(cls) -> AttrPath:
        return _ROOT

    @classmethod
    def of(cls, *segments: Segment) -> AttrPath:
        return cls(tuple(segments))

    @property
    def depth(self) -> int:
        return len(self.segments)

    @property
    def is_root(self) -> bool:
        return not self.segments

    @property
    def is_index(self) -> bool:
        """True when the last segment addresses a list element."""
        return bool(self.segments) and isinstance(self.segments[-1], int)

    @property
    def has_index(self) -> bool:
        return any(isinstance(s, int) for s in self.segments)

    @property
    def name(self) -> str:
        """Display label of the last segment."""
        if not self.segments:
            return ""
        return _format_segment(self.segments[-1])

    def child(self, name: str) -> AttrPath:
        return AttrPath((*self.segments, name))

    def element(self, index: int) -> AttrPath:
        if index < 0:
            raise ValueError(f"List index must be non-negative, got {index}")
        return AttrPath((*self.segments, index))

    def join(self, other: AttrPath) -> AttrPath:
        return AttrPath((*self.segments, *other.segments))

    def parent(self) -> AttrPath | None:
        return parent(self)

    def is_ancestor_of(self, other: AttrPath) -> bool:
        return is_ancestor(self, other)

    def relative_to(self, base: AttrPath) -> AttrPath:
        """Strip ``base`` from the front; paths outside ``base`` are returned as-is."""
        if is_ancestor(base, self):
            return AttrPath(self.segments[base.depth :])
        return self

    def __str__(self) -> str:
        return serialize(self)


_ROOT = AttrPath(())


@dataclass(frozen=True, slots=True)
class EvaluatorExpression:
    """An installable reference plus an optional lambda applied to its value."""

    base: AttrPath
    accessor: str | None = None


def parse(display: str) -> AttrPath:
    """Parse the display form into an ``AttrPath``.

    Accepts the compact index form ``a.b[3]`` as a synonym for ``a.b.[3]``.

    Raises:
        MalformedPathError: On unmatched brackets or quotes, non-numeric
            indices, or empty segments.
    """
    if display == "":
        return _ROOT

    segments: list[Segment] = []
    i = 0
    n = len(display)
    while True:
        if i >= n:
            raise MalformedPathError.at(display, i, "empty segment")
        ch = display[i]
        if ch == '"':
            name, i = _read_quoted(display, i)
            segments.append(name)
        elif ch == "[":
            index, i = _read_index(display, i)
            segments.append(index)
        elif ch == ".":
            raise MalformedPathError.at(display, i, "empty segment")
        elif ch == "]":
            raise MalformedPathError.at(display, i, "unmatched ']'")
        else:
            start = i
            while i < n and display[i] not in ".[":
                if display[i] in ']"':
                    raise MalformedPathError.at(display, i, f"unexpected {display[i]!r}")
                i += 1
            segments.append(display[start:i])

        if i == n:
            break
        if display[i] == ".":
            i += 1
            if i == n:
                raise MalformedPathError.at(display, i, "empty segment")
        elif display[i] != "[":
            raise MalformedPathError.at(display, i, f"expected '.' but found {display[i]!r}")

    return AttrPath(tuple(segments))


def _read_quoted(display: str, start: int) -> tuple[str, int]:
    chars: list[str] = []
    i = start + 1
    n = len(display)
    while i < n:
        ch = display[i]
        if ch == "\\":
            if i + 1 >= n:
                break
            chars.append(display[i + 1])
            i += 2
            continue
        if ch == '"':
            return "".join(chars), i + 1
        chars.append(ch)
        i += 1
    raise MalformedPathError.at(display, start, "unterminated quote")


def _read_index(display: str, start: int) -> tuple[int, int]:
    end = display.find("]", start + 1)
    if end == -1:
        raise MalformedPathError.at(display, start, "unmatched '['")
    body = display[start + 1 : end]
    if not body.isdigit() or not body.isascii():
        raise MalformedPathError.at(
            display, start, f"index must be a non-negative integer: {body!r}"
        )
    return int(body), end + 1


def _format_segment(segment: Segment) -> str:
    if isinstance(segment, int):
        return f"[{segment}]"
    if not segment or any(ch in _QUOTE_TRIGGERS for ch in segment):
        escaped = segment.replace("\\", "\\\\").replace('"', '\\"')
        return f'"{escaped}"'
    return segment


def serialize(path: AttrPath) -> str:
    """Canonical display form. ``serialize(parse(p)) == p`` for canonical ``p``."""
    return ".".join(_format_segment(s) for s in path.segments)


def parent(path: AttrPath) -> AttrPath | None:
    if not path.segments:
        return None
    return AttrPath(path.segments[:-1])


def is_ancestor(a: AttrPath, b: AttrPath) -> bool:
    """True iff ``b`` starts with every segment of ``a`` (a path is its own ancestor)."""
    if a.depth > b.depth:
        return False
    return b.segments[: a.depth] == a.segments


def _nix_attr(name: str) -> str:
    if _NIX_IDENTIFIER.match(name) and name not in _NIX_KEYWORDS:
        return name
    escaped = name.replace("\\", "\\\\").replace('"', '\\"').replace("${", "\\${")
    return f'"{escaped}"'


def to_evaluator_expression(path: AttrPath) -> EvaluatorExpression:
    """Split ``path`` into an index-free base and an accessor lambda.

    Segments after the first index are applied left to right, so
    ``a.[0].[2]`` reads element 2 of element 0 of ``a``, and
    ``a.[0].b`` selects ``b`` from element 0.
    """
    first_index = next(
        (pos for pos, seg in enumerate(path.segments) if isinstance(seg, int)),
        None,
    )
    if first_index is None:
        return EvaluatorExpression(base=path)

    expr = "x"
    for seg in path.segments[first_index:]:
        if isinstance(seg, int):
            expr = f"(builtins.elemAt {expr} {seg})"
        else:
            expr = f"{expr}.{_nix_attr(seg)}"
    return EvaluatorExpression(
        base=AttrPath(path.segments[:first_index]),
        accessor=f"x: {expr}",
    )


def flake_reference(base: AttrPath) -> str:
    """Installable reference for an index-free path, relative to the flake dir."""
    if base.has_index:
        raise ValueError(f"Flake references cannot contain list indices: {base}")
    if base.is_root:
        return "."
    return ".#" + ".".join(_nix_attr(s) for s in base.segments)  # type: ignore[arg-type]


def compose_apply(accessor: str | None, transform: str | None) -> str | None:
    """Compose an accessor lambda with a value transform (accessor runs first)."""
    if accessor is None:
        return transform
    if transform is None:
        return accessor
    return f"x: ({transform}) (({accessor}) x)"
