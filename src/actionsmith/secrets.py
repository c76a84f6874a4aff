# secrets.py
"""
Secret vault adapters and redaction.

A vault only answers `resolve(name, scope)`. Nothing here keeps a global
secret map: each job gets its own `SecretScope`, which asks the vault on
first access, so a secret is resolved just-in-time by the step that
references it.
"""
from __future__ import annotations

import os
import threading
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional

from .errors import SecretNotFoundError

REDACTED = "***"


class SecretVault:
    """Vault boundary: resolve(name, scope) -> value | SecretNotFoundError."""

    def resolve(self, name: str, scope: str | None = None) -> str:
        raise NotImplementedError


class StaticSecretVault(SecretVault):
    """
    In-memory vault.

    `scoped` holds per-scope overrides (scope is usually an environment
    name such as "production"); unscoped `secrets` are the fallback.
    """

    def __init__(
        self,
        secrets: Optional[Dict[str, str]] = None,
        scoped: Optional[Dict[str, Dict[str, str]]] = None,
    ):
        self.secrets = dict(secrets or {})
        self.scoped = {k: dict(v) for k, v in (scoped or {}).items()}

    def resolve(self, name: str, scope: str | None = None) -> str:
        if scope is not None and name in self.scoped.get(scope, {}):
            return self.scoped[scope][name]
        if name in self.secrets:
            return self.secrets[name]
        raise SecretNotFoundError(
            f"secret {name!r} not found",
            details={"secret": name, "scope": scope or "-"},
        )


def _env_key(*parts: str) -> str:
    return "_".join(parts).upper().replace("-", "_")


class EnvSecretVault(SecretVault):
    """
    Reads secrets from process environment variables.

    Lookup order for name=DEPLOY_TOKEN, scope=production, prefix=ACTIONSMITH_SECRET_:
      ACTIONSMITH_SECRET_PRODUCTION_DEPLOY_TOKEN
      ACTIONSMITH_SECRET_DEPLOY_TOKEN
    """

    def __init__(self, prefix: str = "ACTIONSMITH_SECRET_", environ: Optional[Mapping[str, str]] = None):
        self.prefix = prefix
        self.environ = environ if environ is not None else os.environ

    def resolve(self, name: str, scope: str | None = None) -> str:
        candidates: List[str] = []
        if scope:
            candidates.append(self.prefix + _env_key(scope, name))
        candidates.append(self.prefix + _env_key(name))

        for key in candidates:
            value = self.environ.get(key)
            if value is not None:
                return value

        raise SecretNotFoundError(
            f"secret {name!r} not found in environment",
            details={"secret": name, "scope": scope or "-", "looked_for": ", ".join(candidates)},
        )


# ---------------------------------------------------------------------
# Redaction
# ---------------------------------------------------------------------

class Redactor:
    """Collects every secret value revealed during a run and masks it."""

    def __init__(self, values: Iterable[str] = ()):
        self._lock = threading.Lock()
        self._values: set[str] = set()
        for v in values:
            self.add(v)

    def add(self, value: Any) -> None:
        if value is None:
            return
        value = str(value)
        if not value.strip():
            return
        with self._lock:
            self._values.add(value)
            # multi-line secrets also leak line by line
            for line in value.splitlines():
                if line.strip():
                    self._values.add(line)

    @property
    def values(self) -> List[str]:
        with self._lock:
            return sorted(self._values, key=len, reverse=True)

    def redact(self, text: str) -> str:
        if not text:
            return text
        for v in self.values:
            text = text.replace(v, REDACTED)
        return text

    def redact_obj(self, obj: Any) -> Any:
        return redact_obj(obj, self.values)


def redact_obj(obj: Any, values: Iterable[str]) -> Any:
    """Deep-copy `obj` (dicts/lists/strings) with every secret value masked."""
    values = sorted((v for v in values if v), key=len, reverse=True)

    def _walk(o: Any) -> Any:
        if isinstance(o, str):
            for v in values:
                o = o.replace(v, REDACTED)
            return o
        if isinstance(o, Mapping):
            return {str(k): _walk(v) for k, v in o.items()}
        if isinstance(o, (list, tuple)):
            return [_walk(v) for v in o]
        return o

    return _walk(obj)


# ---------------------------------------------------------------------
# Per-job secrets scope
# ---------------------------------------------------------------------

class SecretScope(Mapping[str, str]):
    """
    Read-only `secrets` scope for one job invocation.

    Only declared names are visible. Values are fetched from the vault on
    access and registered with the run's redactor.
    """

    def __init__(
        self,
        names: Iterable[str],
        vault: SecretVault,
        *,
        scope: str | None,
        redactor: Redactor,
    ):
        self._names = tuple(dict.fromkeys(names))
        self._vault = vault
        self._scope = scope
        self._redactor = redactor

    def __getitem__(self, name: str) -> str:
        if name not in self._names:
            raise KeyError(name)
        value = self._vault.resolve(name, self._scope)
        self._redactor.add(value)
        return value

    def __iter__(self) -> Iterator[str]:
        return iter(self._names)

    def __len__(self) -> int:
        return len(self._names)

    def __contains__(self, name: object) -> bool:
        return name in self._names

    def __repr__(self) -> str:
        return f"SecretScope(names={list(self._names)!r}, scope={self._scope!r})"
