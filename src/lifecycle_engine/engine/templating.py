"""``{{placeholder}}`` templates.

Grammar: ``{{`` key ``}}`` where key is any text without ``}}``, trimmed.
Keys are one of

- ``user.<field>``: a field of the live user record
- ``account.<field>``: a field of the user's account record
- ``<name>``: a bare variable

A placeholder that cannot be resolved is left in the output verbatim.
Rendering never raises.
"""
from __future__ import annotations
import re
from dataclasses import dataclass
from typing import Any, Callable, Mapping, Union

from lifecycle_engine.utils.values import to_text

_PLACEHOLDER = re.compile(r"\{\{(.+?)\}\}", re.DOTALL)

UNRESOLVED = object()


@dataclass(frozen=True)
class Placeholder:
    key: str
    raw: str

    @property
    def namespace(self) -> str | None:
        head, sep, _ = self.key.partition(".")
        if sep and head in ("user", "account"):
            return head
        return None

    @property
    def path(self) -> str:
        if self.namespace is None:
            return self.key
        return self.key.partition(".")[2]


Segment = Union[str, Placeholder]


def parse_template(template: str) -> list[Segment]:
    segments: list[Segment] = []
    pos = 0
    for m in _PLACEHOLDER.finditer(template):
        if m.start() > pos:
            segments.append(template[pos:m.start()])
        segments.append(Placeholder(key=m.group(1).strip(), raw=m.group(0)))
        pos = m.end()
    if pos < len(template):
        segments.append(template[pos:])
    return segments


def render(template: str, lookup: Callable[[Placeholder], Any]) -> str:
    """Render with ``lookup``; returning ``UNRESOLVED`` keeps the placeholder."""
    if not template:
        return ""
    out = []
    for segment in parse_template(template):
        if isinstance(segment, str):
            out.append(segment)
            continue
        value = lookup(segment)
        out.append(segment.raw if value is UNRESOLVED else to_text(value))
    return "".join(out)


def resolve_template(
    template: str,
    variables: Mapping[str, Any],
    user: Mapping[str, Any] | None = None,
    account: Mapping[str, Any] | None = None,
) -> str:
    """Enrollment variables first, then the live user/account records."""

    def lookup(ph: Placeholder) -> Any:
        if ph.key in variables:
            return variables[ph.key]
        source = {"user": user, "account": account}.get(ph.namespace or "")
        if source is not None and ph.path in source:
            return source[ph.path]
        return UNRESOLVED

    return render(template, lookup)
