"""The trust boundary between developer-authored sql and request values.

registry constants and compiler-generated keywords are TrustedSQL and are
rendered verbatim. anything derived from a request (filter values, the cached
website domain, the date range) is wrapped in Bound and can only ever come
out of render() as a placeholder plus an entry in the params list.
"""

from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any, Protocol


class TrustedSQL(str):
    """A sql snippet that came from code or the registry, never from a request."""

    __slots__ = ()


@dataclass(frozen=True)
class Bound:
    """A request-derived value, rendered as a placeholder."""

    value: Any


Part = TrustedSQL | Bound


@dataclass(frozen=True)
class Fragment:
    """An ordered run of trusted sql and bound values."""

    parts: tuple[Part, ...]

    @classmethod
    def of(cls, *parts: Part | str) -> "Fragment":
        # bare str is rejected so a request value can't sneak in unbound
        checked: list[Part] = []
        for part in parts:
            if not isinstance(part, TrustedSQL | Bound):
                raise TypeError(
                    f"Fragment parts must be TrustedSQL or Bound, got {type(part).__name__}"
                )
            checked.append(part)
        return cls(tuple(checked))

    @classmethod
    def trusted(cls, sql: str) -> "Fragment":
        return cls((TrustedSQL(sql),))

    @property
    def values(self) -> list[Any]:
        return [p.value for p in self.parts if isinstance(p, Bound)]


class ParamStyle(Protocol):
    def placeholder(self, index: int, value: Any) -> str: ...


def render(fragment: Fragment, style: ParamStyle, params: list[Any]) -> str:
    """Render one fragment, appending its bound values to params."""
    out = []
    for part in fragment.parts:
        if isinstance(part, Bound):
            out.append(style.placeholder(len(params), part.value))
            params.append(part.value)
        else:
            out.append(part)
    return "".join(out)


def render_all(
    fragments: Iterable[Fragment], style: ParamStyle, params: list[Any], sep: str
) -> str:
    return sep.join(render(f, style, params) for f in fragments)
