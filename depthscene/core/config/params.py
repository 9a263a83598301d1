"""Tagged parameter bundles persisted as single text lines.

Each bundle owns an ordered list of parameters with defaults and short
descriptions. On disk a bundle is one line: its tag followed by the values in
declared order. Loading ignores lines with other tags and keeps defaults for
values missing at the end of the line; saving replaces any existing line with
the same tag.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ParamSpec:
    key: str
    default: float
    descr: str = ""
    kind: type = float


def ispec(key: str, default: int, descr: str = "") -> ParamSpec:
    return ParamSpec(key, default, descr, int)


def fspec(key: str, default: float, descr: str = "") -> ParamSpec:
    return ParamSpec(key, default, descr, float)


def _fmt(v: Any, kind: type) -> str:
    if kind is int:
        return str(int(v))
    return f"{float(v):.4g}"


class ParamBundle:
    """A named group of numeric parameters exposed as attributes."""

    def __init__(self, tag: str, specs: Iterable[ParamSpec]) -> None:
        specs = list(specs)
        keys = [s.key for s in specs]
        if len(set(keys)) != len(keys):
            raise ValueError(f"duplicate parameter keys in bundle {tag!r}")
        object.__setattr__(self, "tag", tag)
        object.__setattr__(self, "specs", specs)
        object.__setattr__(self, "_vals", {})
        self.revert_all()

    def __getattr__(self, name: str) -> Any:
        vals = self.__dict__.get("_vals", {})
        if name in vals:
            return vals[name]
        raise AttributeError(name)

    def __setattr__(self, name: str, value: Any) -> None:
        if name in self._vals:
            kind = self._kind(name)
            self._vals[name] = kind(value)
        else:
            object.__setattr__(self, name, value)

    def _kind(self, key: str) -> type:
        for s in self.specs:
            if s.key == key:
                return s.kind
        return float

    def keys(self) -> list[str]:
        return [s.key for s in self.specs]

    def as_dict(self) -> dict[str, Any]:
        return dict(self._vals)

    def revert_all(self) -> None:
        for s in self.specs:
            self._vals[s.key] = s.kind(s.default)

    def set_defaults(self, **kwargs: Any) -> None:
        """Change defaults (and current values) of named parameters."""

        specs = []
        for s in self.specs:
            if s.key in kwargs:
                s = ParamSpec(s.key, kwargs[s.key], s.descr, s.kind)
                self._vals[s.key] = s.kind(s.default)
            specs.append(s)
        object.__setattr__(self, "specs", specs)

    def line(self) -> str:
        vals = " ".join(_fmt(self._vals[s.key], s.kind) for s in self.specs)
        return f"{self.tag}\t{vals}"

    def set_line(self, text: str) -> int:
        """Apply the values from a saved line. Returns 1 if the tag matched."""

        parts = text.split()
        if not parts or parts[0] != self.tag:
            return 0
        for s, raw in zip(self.specs, parts[1:]):
            try:
                self._vals[s.key] = s.kind(float(raw)) if s.kind is int else float(raw)
            except ValueError:
                logger.warning("Bad value %r for %s.%s", raw, self.tag, s.key)
                break
        return 1

    def load_defs(self, path: str | Path | None) -> int:
        """Load values from `path`. Returns 1 if found, 0 if absent or unreadable."""

        if path is None:
            return 0
        try:
            text = Path(path).read_text(encoding="utf-8")
        except OSError:
            return 0
        for ln in text.splitlines():
            if self.set_line(ln) > 0:
                return 1
        return 0

    def save_vals(self, path: str | Path) -> int:
        """Rewrite this bundle's line in `path`. Returns 1 if ok, 0 on failure."""

        p = Path(path)
        kept: list[str] = []
        try:
            if p.exists():
                for ln in p.read_text(encoding="utf-8").splitlines():
                    parts = ln.split()
                    if parts and parts[0] == self.tag:
                        continue
                    kept.append(ln)
            kept.append(self.line())
            p.write_text("\n".join(kept) + "\n", encoding="utf-8")
        except OSError:
            logger.exception("Could not save parameters %s to %s", self.tag, p)
            return 0
        return 1


def load_all(bundles: Iterable[ParamBundle], path: str | Path | None) -> int:
    """Revert then load each bundle; returns 1 only if every bundle was found."""

    ok = 1
    for b in bundles:
        b.revert_all()
        ok &= b.load_defs(path)
    return ok


def save_all(bundles: Iterable[ParamBundle], path: str | Path) -> int:
    ok = 1
    for b in bundles:
        ok &= b.save_vals(path)
    return ok
