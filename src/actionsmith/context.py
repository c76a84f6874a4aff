# context.py
from __future__ import annotations

from types import MappingProxyType
from typing import Any, Dict, Iterator, Mapping, Optional

from .secrets import REDACTED, Redactor, SecretScope

SCOPES = ("github", "environment", "inputs", "secrets", "env", "needs", "steps", "jobs", "job")


def _freeze(value: Any) -> Any:
    if isinstance(value, SecretScope):
        return value
    if isinstance(value, dict):
        return MappingProxyType({k: _freeze(v) for k, v in value.items()})
    if isinstance(value, list):
        return tuple(_freeze(v) for v in value)
    return value


def _thaw(value: Any) -> Any:
    if isinstance(value, Mapping):
        return {k: _thaw(v) for k, v in value.items()}
    if isinstance(value, tuple):
        return [_thaw(v) for v in value]
    return value


class Context(Mapping[str, Mapping[str, Any]]):
    """
    Immutable mapping of scope name -> read-only key/value mapping.

    Built fresh for every job and every action invocation. `with_scope`
    returns a new Context; nothing mutates one in place, so concurrent
    jobs never share a writable region.
    """

    __slots__ = ("_scopes",)

    def __init__(self, scopes: Optional[Mapping[str, Any]] = None):
        self._scopes: Dict[str, Any] = {
            name: _freeze(dict(values) if isinstance(values, MappingProxyType) else values)
            for name, values in (scopes or {}).items()
        }

    def __getitem__(self, name: str) -> Mapping[str, Any]:
        return self._scopes[name]

    def __iter__(self) -> Iterator[str]:
        return iter(self._scopes)

    def __len__(self) -> int:
        return len(self._scopes)

    def __repr__(self) -> str:
        return f"Context(scopes={list(self._scopes)!r})"

    def scope(self, name: str) -> Mapping[str, Any]:
        return self._scopes.get(name, MappingProxyType({}))

    def with_scope(self, name: str, values: Mapping[str, Any]) -> "Context":
        scopes = dict(self._scopes)
        scopes[name] = values
        return Context(scopes)

    def with_scopes(self, **scopes: Mapping[str, Any]) -> "Context":
        merged = dict(self._scopes)
        merged.update(scopes)
        return Context(merged)

    def without(self, *names: str) -> "Context":
        return Context({k: v for k, v in self._scopes.items() if k not in names})

    def snapshot(self, redactor: Optional[Redactor] = None) -> Dict[str, Any]:
        """
        Plain-dict copy safe to print or persist.

        Secrets are never resolved for a snapshot: the scope is rendered as
        name -> '***'. Any secret value already revealed elsewhere (env,
        outputs) is masked by the redactor.
        """
        out: Dict[str, Any] = {}
        for name, values in self._scopes.items():
            if isinstance(values, SecretScope) or name == "secrets":
                out[name] = {k: REDACTED for k in values}
            else:
                out[name] = _thaw(values)
        if redactor is not None:
            out = redactor.redact_obj(out)
        return out
