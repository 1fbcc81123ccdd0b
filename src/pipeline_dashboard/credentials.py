"""Credential storage consumed by the Azure DevOps client.

Tokens are stored as opaque name/value pairs outside the request path. They
are set once through an administrative call and read on every outbound
request.
"""

from __future__ import annotations

import os
from abc import ABC, abstractmethod
from typing import Dict, MutableMapping, Optional

PAT_TOKEN_KEY = "ADO_PAT"


class CredentialStore(ABC):
    """Minimal key/value interface for persisted secrets."""

    @abstractmethod
    def get(self, name: str) -> Optional[str]:
        """Return the stored value of ``name``, or ``None`` when unset."""

    @abstractmethod
    def set(self, name: str, value: str) -> None:
        """Persist ``value`` under ``name``."""


class EnvironmentCredentialStore(CredentialStore):
    """Credential store backed by process environment variables."""

    def __init__(self, environ: Optional[MutableMapping[str, str]] = None) -> None:
        self._environ = os.environ if environ is None else environ

    def get(self, name: str) -> Optional[str]:
        value = self._environ.get(name, "").strip()
        return value or None

    def set(self, name: str, value: str) -> None:
        self._environ[name] = value


class MemoryCredentialStore(CredentialStore):
    """In-process credential store, mostly useful for embedding and tests."""

    def __init__(self, values: Optional[Dict[str, str]] = None) -> None:
        self._values: Dict[str, str] = dict(values or {})

    def get(self, name: str) -> Optional[str]:
        value = self._values.get(name)
        return value or None

    def set(self, name: str, value: str) -> None:
        self._values[name] = value


def get_pat_token(store: CredentialStore) -> str:
    """Return the stored Azure DevOps personal access token, or ``""`` when unset."""
    return store.get(PAT_TOKEN_KEY) or ""


def set_pat_token(store: CredentialStore, token: str) -> None:
    """Persist the Azure DevOps personal access token in ``store``."""
    store.set(PAT_TOKEN_KEY, token.strip())
