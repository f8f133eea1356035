from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any

from ..exceptions import AuthError
from ..util import json as bufferjson

logger = logging.getLogger(__name__)

_FILE_LOCKS: dict[Path, asyncio.Lock] = {}

CREDS_FILENAME = "creds.json"


def _lock_for(path: Path) -> asyncio.Lock:
    lock = _FILE_LOCKS.get(path)
    if lock is None:
        lock = asyncio.Lock()
        _FILE_LOCKS[path] = lock
    return lock


async def _read_text(path: Path) -> str:
    return await asyncio.to_thread(path.read_text, "utf-8")


async def _write_text(path: Path, data: str) -> None:
    await asyncio.to_thread(path.write_text, data, "utf-8")


async def _unlink(path: Path) -> None:
    await asyncio.to_thread(path.unlink, missing_ok=True)


class CredentialStore:
    """
    Baileys-style auth folder holding the linked-device credentials.

    The dashboard never interprets the credential blob: the session bridge hands
    it over in `creds` frames and receives it back on connect. `clear()` wipes
    the folder so the next connect has to pair from scratch.
    """

    def __init__(self, folder: str | Path) -> None:
        self.folder = Path(folder).expanduser()

    @property
    def creds_path(self) -> Path:
        return self.folder / CREDS_FILENAME

    async def load(self) -> dict[str, Any] | None:
        path = self.creds_path
        try:
            async with _lock_for(path):
                raw = await _read_text(path)
        except FileNotFoundError:
            return None
        except OSError as e:
            raise AuthError(f"failed to read creds from {path}: {e}") from e
        try:
            data = bufferjson.loads(raw)
        except ValueError as e:
            raise AuthError(f"failed to load creds from {path}: {e}") from e
        if not isinstance(data, dict):
            raise AuthError(f"{path} did not contain an object")
        return data

    async def save(self, creds: dict[str, Any]) -> None:
        path = self.creds_path
        try:
            await asyncio.to_thread(self.folder.mkdir, parents=True, exist_ok=True)
            async with _lock_for(path):
                await _write_text(path, bufferjson.dumps(creds, indent=2))
        except OSError as e:
            raise AuthError(f"failed to save creds to {path}: {e}") from e

    async def clear(self) -> None:
        if not self.folder.exists():
            return
        removed = 0
        try:
            for p in await asyncio.to_thread(lambda: list(self.folder.glob("*.json"))):
                async with _lock_for(p):
                    await _unlink(p)
                removed += 1
        except OSError as e:
            raise AuthError(f"failed to clear creds in {self.folder}: {e}") from e
        logger.info("Cleared %d credential file(s) from %s", removed, self.folder)
