"""Environment scopes — scope-keyed secret and variable bindings.

Each scope (e.g. ``staging``, ``production``) owns its own bindings. A job
instance resolves only the scope it declares, and only if the scope is
declared for the current run: a scope restricted to ``release-published``
events raises :class:`UnknownEnvironment` in any other run.

Secret material is read from a :class:`SecretSource` lazily, the first time a
job in that scope is about to execute, and dropped by
:meth:`EnvironmentProvisioner.close` when the run ends. Per-scope stores are
never merged or copied into one another.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Mapping, Protocol

from pydantic import BaseModel, SecretStr

from pipewright.errors import UnknownEnvironment
from pipewright.pipeline.models import EventKind, RunContext, path_matches

logger = logging.getLogger("pipewright.pipeline.environments")


# ── Scope declaration ────────────────────────────────────────────────────────


class EnvironmentScope(BaseModel):
    """A deployment tier and the bindings it owns.

    ``secrets`` maps binding name → source key (for the default source, an
    environment variable of the orchestrator process). ``events`` and ``refs``
    restrict which runs may resolve the scope; empty means unrestricted.
    """

    description: str = ""
    variables: dict[str, str] = {}
    secrets: dict[str, str] = {}
    events: list[EventKind] = []
    refs: list[str] = []

    def allows(self, context: RunContext) -> str | None:
        """Return None if ``context`` may resolve this scope, else the reason."""
        if self.events and context.event not in self.events:
            allowed = ", ".join(e.value for e in self.events)
            return f"event '{context.event.value}' is not one of [{allowed}]"
        if self.refs and not path_matches(context.ref, self.refs):
            return f"ref '{context.ref}' is not allowed"
        return None


# ── Secret sources ───────────────────────────────────────────────────────────


class SecretSource(Protocol):
    """Fetches secret values for one scope."""

    def fetch(self, scope: str, keys: Mapping[str, str]) -> dict[str, str]:
        """Return ``{binding_name: value}`` for the requested ``{binding_name: key}``."""
        ...


class EnvSecretSource:
    """Reads secrets from the orchestrator's process environment."""

    def __init__(self, environ: Mapping[str, str] | None = None):
        self._environ = environ if environ is not None else os.environ

    def fetch(self, scope: str, keys: Mapping[str, str]) -> dict[str, str]:
        values: dict[str, str] = {}
        missing: list[str] = []
        for name, key in keys.items():
            value = self._environ.get(key)
            if value is None:
                missing.append(key)
            else:
                values[name] = value
        if missing:
            logger.warning(
                "Environment '%s': %d secret source(s) not set: %s",
                scope,
                len(missing),
                ", ".join(sorted(missing)),
            )
        return values


class StaticSecretSource:
    """In-memory secrets keyed by scope, then by source key."""

    def __init__(self, secrets: Mapping[str, Mapping[str, str]]):
        self._secrets = {scope: dict(values) for scope, values in secrets.items()}

    def fetch(self, scope: str, keys: Mapping[str, str]) -> dict[str, str]:
        store = self._secrets.get(scope, {})
        return {name: store[key] for name, key in keys.items() if key in store}


# ── Resolved bindings ────────────────────────────────────────────────────────


@dataclass(frozen=True)
class EnvironmentBindings:
    """Immutable binding set for a single scope."""

    scope: str
    variables: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))
    secrets: Mapping[str, SecretStr] = field(default_factory=lambda: MappingProxyType({}))

    def as_env(self) -> dict[str, str]:
        """Flatten into a fresh dict for handing to a collaborator process."""
        env = dict(self.variables)
        env.update({k: v.get_secret_value() for k, v in self.secrets.items()})
        return env

    def __repr__(self) -> str:
        return (
            f"EnvironmentBindings(scope={self.scope!r}, "
            f"variables={sorted(self.variables)}, secrets={sorted(self.secrets)})"
        )


# ── Provisioner ──────────────────────────────────────────────────────────────


class EnvironmentProvisioner:
    """Resolves environment scopes for one run."""

    def __init__(
        self,
        scopes: Mapping[str, EnvironmentScope],
        context: RunContext,
        source: SecretSource | None = None,
    ):
        self._scopes = dict(scopes)
        self._context = context
        self._source = source or EnvSecretSource()
        self._provisioned: dict[str, EnvironmentBindings] = {}

    def declared(self) -> list[str]:
        """Scopes resolvable in this run."""
        return sorted(n for n, s in self._scopes.items() if s.allows(self._context) is None)

    def is_provisioned(self, scope: str) -> bool:
        return scope in self._provisioned

    def resolve(self, scope: str) -> EnvironmentBindings:
        """Return the bindings for ``scope``, provisioning them on first use."""
        cached = self._provisioned.get(scope)
        if cached is not None:
            return cached

        definition = self._scopes.get(scope)
        if definition is None:
            raise UnknownEnvironment(scope, "scope is not declared")
        reason = definition.allows(self._context)
        if reason is not None:
            raise UnknownEnvironment(scope, reason)

        fetched = self._source.fetch(scope, MappingProxyType(dict(definition.secrets)))
        bindings = EnvironmentBindings(
            scope=scope,
            variables=MappingProxyType(dict(definition.variables)),
            secrets=MappingProxyType({k: SecretStr(v) for k, v in fetched.items()}),
        )
        self._provisioned[scope] = bindings
        logger.info(
            "Provisioned environment '%s' (%d variables, %d secrets)",
            scope,
            len(bindings.variables),
            len(bindings.secrets),
        )
        return bindings

    def close(self) -> None:
        """Forget all provisioned material."""
        if self._provisioned:
            logger.debug("Dropping provisioned environments: %s", sorted(self._provisioned))
        self._provisioned.clear()
