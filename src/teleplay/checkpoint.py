"""Durable offset checkpoints keyed by bot identity."""

from __future__ import annotations

import hashlib
import os
import tempfile
from pathlib import Path
from typing import Protocol

import anyio
import msgspec

from .errors import CheckpointError
from .logging import get_logger

logger = get_logger(__name__)

STATE_VERSION = 1
STATE_FILENAME = "teleplay_checkpoints.json"


class CheckpointStore(Protocol):
    async def get(self, key: str) -> int | None: ...

    async def set(self, key: str, offset: int) -> None: ...


class _CheckpointState(msgspec.Struct, forbid_unknown_fields=False):
    version: int
    offsets: dict[str, int] = msgspec.field(default_factory=dict)


def token_fingerprint(token: str) -> str:
    digest = hashlib.sha256(token.encode("utf-8")).hexdigest()
    return digest[:10]


def checkpoint_key(token: str) -> str:
    return f"checkpoint:{token_fingerprint(token)}"


def resolve_checkpoint_path(config_path: Path) -> Path:
    return config_path.with_name(STATE_FILENAME)


class MemoryCheckpointStore:
    def __init__(self, offsets: dict[str, int] | None = None) -> None:
        self.offsets: dict[str, int] = dict(offsets or {})
        self.writes: list[tuple[str, int]] = []

    async def get(self, key: str) -> int | None:
        return self.offsets.get(key)

    async def set(self, key: str, offset: int) -> None:
        if self.offsets.get(key) == offset:
            return
        self.offsets[key] = offset
        self.writes.append((key, offset))


class JsonCheckpointStore:
    """Checkpoint store backed by one JSON file.

    Writes go to a temp file in the same directory and are moved into place
    with ``os.replace``, so a crash leaves either the old or the new document.
    Concurrent writers on the same key are not coordinated: the last write
    wins.
    """

    def __init__(self, path: Path) -> None:
        self._path = path
        self._lock = anyio.Lock()
        self._state: _CheckpointState | None = None
        self._mtime_ns: int | None = None

    @property
    def path(self) -> Path:
        return self._path

    async def get(self, key: str) -> int | None:
        async with self._lock:
            state = self._reload_locked_if_needed()
            return state.offsets.get(key)

    async def set(self, key: str, offset: int) -> None:
        async with self._lock:
            state = self._reload_locked_if_needed()
            if state.offsets.get(key) == offset:
                return
            state.offsets[key] = offset
            self._save_locked(state)
        logger.debug("checkpoint.saved", key=key, offset=offset)

    async def delete(self, key: str) -> bool:
        async with self._lock:
            state = self._reload_locked_if_needed()
            if key not in state.offsets:
                return False
            del state.offsets[key]
            self._save_locked(state)
        logger.info("checkpoint.deleted", key=key)
        return True

    def _stat_mtime_ns(self) -> int | None:
        try:
            return self._path.stat().st_mtime_ns
        except FileNotFoundError:
            return None
        except OSError as exc:
            raise CheckpointError(
                f"failed to stat checkpoint file {self._path}: {exc}"
            ) from exc

    def _reload_locked_if_needed(self) -> _CheckpointState:
        mtime_ns = self._stat_mtime_ns()
        if self._state is not None and mtime_ns == self._mtime_ns:
            return self._state
        self._state = self._load_locked(mtime_ns)
        self._mtime_ns = mtime_ns
        return self._state

    def _load_locked(self, mtime_ns: int | None) -> _CheckpointState:
        if mtime_ns is None:
            return _CheckpointState(version=STATE_VERSION)
        try:
            raw = self._path.read_bytes()
        except OSError as exc:
            raise CheckpointError(
                f"failed to read checkpoint file {self._path}: {exc}"
            ) from exc
        try:
            state = msgspec.json.decode(raw, type=_CheckpointState)
        except msgspec.DecodeError as exc:
            raise CheckpointError(
                f"malformed checkpoint file {self._path}: {exc}"
            ) from exc
        if state.version != STATE_VERSION:
            raise CheckpointError(
                f"unsupported checkpoint version {state.version} in {self._path}"
            )
        return state

    def _save_locked(self, state: _CheckpointState) -> None:
        payload = msgspec.json.format(msgspec.json.encode(state), indent=2)
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(
                prefix=f".{self._path.name}.", suffix=".tmp", dir=self._path.parent
            )
            try:
                with os.fdopen(fd, "wb") as handle:
                    handle.write(payload)
                    handle.write(b"\n")
                    handle.flush()
                    os.fsync(handle.fileno())
                os.replace(tmp_name, self._path)
            except BaseException:
                Path(tmp_name).unlink(missing_ok=True)
                raise
        except OSError as exc:
            # Drop the cached state so the next read reflects what is on disk.
            self._state = None
            self._mtime_ns = None
            raise CheckpointError(
                f"failed to write checkpoint file {self._path}: {exc}"
            ) from exc
        self._mtime_ns = self._stat_mtime_ns()
