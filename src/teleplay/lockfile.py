from __future__ import annotations

import json
import os
import socket
import sys
import uuid
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from pathlib import Path

from .logging import get_logger

logger = get_logger(__name__)

LOCK_VERSION = 1


@dataclass(frozen=True)
class LockInfo:
    version: int
    instance_id: str | None
    pid: int | None
    started_at: str | None
    hostname: str | None
    checkpoint_path: str | None
    token_fingerprint: str | None
    argv: list[str] | None


class LockError(RuntimeError):
    def __init__(
        self,
        *,
        path: Path,
        existing: LockInfo | None,
        state: str,
    ) -> None:
        self.path = path
        self.existing = existing
        self.state = state
        super().__init__(_format_lock_message(path, existing, state))


@dataclass
class LockHandle:
    path: Path
    instance_id: str

    def release(self) -> None:
        try:
            existing = _read_lock_info(self.path)
            if existing is None or existing.instance_id == self.instance_id:
                self.path.unlink()
        except FileNotFoundError:
            return
        except OSError as exc:
            logger.warning("lock.release_failed", path=str(self.path), error=str(exc))

    def __enter__(self) -> "LockHandle":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()


def lock_path_for_checkpoint(checkpoint_path: Path, token_fingerprint: str) -> Path:
    return checkpoint_path.with_name(
        f"{checkpoint_path.stem}.{token_fingerprint}.lock"
    )


def acquire_lock(*, checkpoint_path: Path, token_fingerprint: str) -> LockHandle:
    """Claim the single-poller slot for one token on one checkpoint file.

    A lock left behind by a process that is no longer running on this host
    is replaced.
    """
    cp_path = checkpoint_path.expanduser().resolve()
    lock_path = lock_path_for_checkpoint(cp_path, token_fingerprint)
    instance_id = uuid.uuid4().hex
    info = LockInfo(
        version=LOCK_VERSION,
        instance_id=instance_id,
        pid=os.getpid(),
        started_at=datetime.now(timezone.utc).isoformat(timespec="seconds"),
        hostname=socket.gethostname(),
        checkpoint_path=str(cp_path),
        token_fingerprint=token_fingerprint,
        argv=list(sys.argv),
    )
    try:
        lock_path.parent.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        raise LockError(path=lock_path, existing=None, state=str(exc)) from exc

    for _ in range(2):
        try:
            fd = os.open(lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o600)
        except FileExistsError:
            existing = _read_lock_info(lock_path)
            state = _lock_state(existing)
            if state != "stale":
                raise LockError(path=lock_path, existing=existing, state=state) from None
            logger.info(
                "lock.replacing_stale",
                path=str(lock_path),
                pid=existing.pid if existing else None,
            )
            try:
                lock_path.unlink()
            except FileNotFoundError:
                pass
            except OSError as exc:
                raise LockError(path=lock_path, existing=existing, state=str(exc)) from exc
            continue
        except OSError as exc:
            raise LockError(path=lock_path, existing=None, state=str(exc)) from exc

        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            json.dump(asdict(info), handle, indent=2, sort_keys=True)
            handle.write("\n")
        return LockHandle(path=lock_path, instance_id=instance_id)

    raise LockError(path=lock_path, existing=_read_lock_info(lock_path), state="unknown")


def _read_lock_info(path: Path) -> LockInfo | None:
    try:
        raw = path.read_text(encoding="utf-8")
    except OSError:
        return None
    try:
        data = json.loads(raw)
    except json.JSONDecodeError:
        return None
    if not isinstance(data, dict):
        return None

    def _str(key: str) -> str | None:
        value = data.get(key)
        return value if isinstance(value, str) and value.strip() else None

    pid = data.get("pid")
    if isinstance(pid, bool) or not isinstance(pid, int):
        pid = None
    argv = data.get("argv")
    if not isinstance(argv, list) or not all(isinstance(arg, str) for arg in argv):
        argv = None
    version = data.get("version")
    if not isinstance(version, int):
        version = 0
    return LockInfo(
        version=version,
        instance_id=_str("instance_id"),
        pid=pid,
        started_at=_str("started_at"),
        hostname=_str("hostname"),
        checkpoint_path=_str("checkpoint_path"),
        token_fingerprint=_str("token_fingerprint"),
        argv=argv,
    )


def _pid_running(pid: int) -> bool | None:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    except OSError:
        return None
    return True


def _lock_state(existing: LockInfo | None) -> str:
    if existing is None:
        return "unknown"
    hostname = existing.hostname
    if hostname and hostname != socket.gethostname():
        return "unknown"
    if existing.pid is None or existing.pid <= 0:
        return "unknown"
    running = _pid_running(existing.pid)
    if running is False:
        return "stale"
    if running:
        return "running"
    return "unknown"


def _format_lock_message(path: Path, existing: LockInfo | None, state: str) -> str:
    if state not in {"stale", "running", "unknown"}:
        return f"failed to create lock: {state}"
    header = "another teleplay instance may already be polling for this bot."
    if state == "running":
        header = "another teleplay instance is already polling for this bot."
    lines = [
        header,
        f"lock file: {_display_lock_path(path)}",
    ]
    if existing is not None and existing.pid is not None:
        lines.append(f"pid: {existing.pid}")
    lines.append("if you are sure that's not the case, delete the lock file.")
    return "\n".join(lines)


def _display_lock_path(path: Path) -> str:
    home = Path.home()
    try:
        resolved = path.expanduser().resolve()
        rel = resolved.relative_to(home)
        return f"~/{rel}"
    except (ValueError, OSError):
        return str(path)
