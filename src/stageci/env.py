# env.py
"""
Hierarchical environment scopes.

A scope is a mapping plus a parent pointer. Lookups go innermost-first and
stop at the root, which holds the process-level variables the caller
supplied. Scopes are never mutated after construction (``purge`` is the one
exception, used when a credential binding is released), so concurrent
stages can share a parent safely and each derives its own child.
"""
from __future__ import annotations

import re
from typing import Dict, Iterator, Mapping, Optional

from .errors import UndefinedVariable

# $${NAME} is an escape for a literal ${NAME}
_REF = re.compile(r"\$(\$?)\{([A-Za-z_][A-Za-z0-9_]*)\}")


class EnvironmentScope:
    def __init__(
        self,
        values: Mapping[str, str] | None = None,
        parent: Optional["EnvironmentScope"] = None,
        *,
        templated: bool = False,
        strict: bool = False,
    ):
        """
        Args:
            values: Variables defined at this level
            parent: Enclosing scope, or None for the root
            templated: If True, values may reference ``${VAR}`` and are
                interpolated against the parent scope when resolved
            strict: Raise UndefinedVariable instead of substituting ""
        """
        self._values: Dict[str, str] = {k: str(v) for k, v in (values or {}).items()}
        self._parent = parent
        self._templated = templated
        self.strict = strict if parent is None else (strict or parent.strict)

    @classmethod
    def root(cls, values: Mapping[str, str] | None = None, *, strict: bool = False) -> "EnvironmentScope":
        return cls(values, strict=strict)

    @property
    def parent(self) -> Optional["EnvironmentScope"]:
        return self._parent

    @property
    def local(self) -> Dict[str, str]:
        """A copy of this level's raw (uninterpolated) mapping."""
        return dict(self._values)

    def derive(self, local_env: Mapping[str, str] | None = None) -> "EnvironmentScope":
        """Child scope whose values may reference variables from this one."""
        return EnvironmentScope(local_env, parent=self, templated=True)

    def derive_literal(self, values: Mapping[str, str]) -> "EnvironmentScope":
        """Child scope whose values are taken verbatim (secrets, injected facts)."""
        return EnvironmentScope(values, parent=self, templated=False)

    def _lookup(self, name: str) -> Optional[str]:
        scope: Optional[EnvironmentScope] = self
        while scope is not None:
            if name in scope._values:
                raw = scope._values[name]
                if scope._templated and scope._parent is not None:
                    return scope._parent.interpolate(raw)
                return raw
            scope = scope._parent
        return None

    def resolve(self, name: str) -> Optional[str]:
        """Value of ``name`` (None if undefined)."""
        return self._lookup(name)

    def __contains__(self, name: str) -> bool:
        return self._lookup(name) is not None

    def __getitem__(self, name: str) -> str:
        value = self._lookup(name)
        if value is None:
            raise UndefinedVariable(name)
        return value

    def interpolate(self, template: str, *, strict: bool | None = None) -> str:
        """
        Substitute every ``${NAME}`` in ``template`` in a single pass.

        Substituted text is never rescanned, so a value containing ``${X}``
        stays literal.
        """
        strict = self.strict if strict is None else strict

        def _sub(m: re.Match) -> str:
            escaped, name = m.group(1), m.group(2)
            if escaped:
                return "${" + name + "}"
            value = self._lookup(name)
            if value is None:
                if strict:
                    raise UndefinedVariable(name)
                return ""
            return value

        return _REF.sub(_sub, template)

    def names(self) -> Iterator[str]:
        seen = set()
        scope: Optional[EnvironmentScope] = self
        while scope is not None:
            for name in scope._values:
                if name not in seen:
                    seen.add(name)
                    yield name
            scope = scope._parent

    def flatten(self) -> Dict[str, str]:
        """Materialize the full chain into one mapping for a child process."""
        return {name: self._lookup(name) or "" for name in self.names()}

    def purge(self) -> None:
        """Overwrite and drop this level's values."""
        for key in list(self._values):
            self._values[key] = ""
        self._values.clear()

    def depth(self) -> int:
        n, scope = 0, self._parent
        while scope is not None:
            n, scope = n + 1, scope._parent
        return n

    def __repr__(self) -> str:
        return f"EnvironmentScope(depth={self.depth()}, keys={sorted(self._values)})"
