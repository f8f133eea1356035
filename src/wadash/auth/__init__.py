from __future__ import annotations

from .store import CredentialStore

__all__ = [
    "CredentialStore",
]
