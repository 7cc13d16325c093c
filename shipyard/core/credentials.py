"""Credential interface: named secrets fetched per stage at execution time.

Secrets are never stored on the run: a stage asks for the names its
action declares, uses them for that execution only, and every value is
registered with the stage's redactor before any output is captured.
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from typing import Protocol, runtime_checkable

from shipyard.core.errors import PermanentStageError


class MissingCredentialError(PermanentStageError):
    """A stage asked for a secret the credential store does not have."""


@runtime_checkable
class CredentialProvider(Protocol):
    """Protocol for external credential stores.

    Any object with a ``get(name) -> str`` method satisfies this protocol.
    Implementations raise ``MissingCredentialError`` for unknown names.
    """

    def get(self, name: str) -> str:
        ...


def env_var_name(name: str, prefix: str = "SHIPYARD_SECRET_") -> str:
    """``registry-token`` -> ``SHIPYARD_SECRET_REGISTRY_TOKEN``."""
    return prefix + name.upper().replace("-", "_").replace(".", "_")


class EnvCredentialProvider:
    """Reads secrets from ``SHIPYARD_SECRET_<NAME>`` environment variables."""

    def __init__(
        self,
        environ: Mapping[str, str] | None = None,
        prefix: str = "SHIPYARD_SECRET_",
    ) -> None:
        self._environ = environ if environ is not None else os.environ
        self._prefix = prefix

    def get(self, name: str) -> str:
        key = env_var_name(name, self._prefix)
        value = self._environ.get(key)
        if not value:
            raise MissingCredentialError(f"Credential {name!r} not available (expected ${key})")
        return value


class StaticCredentialProvider:
    """In-memory credentials, for tests and local runs."""

    def __init__(self, secrets: Mapping[str, str] | None = None) -> None:
        self._secrets = dict(secrets or {})

    def get(self, name: str) -> str:
        try:
            return self._secrets[name]
        except KeyError:
            raise MissingCredentialError(f"Credential {name!r} not available") from None
