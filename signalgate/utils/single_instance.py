"""Single-instance lock so two gateways never append to the same ledger."""

from __future__ import annotations

import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, TextIO

import orjson


class GatewayAlreadyRunning(RuntimeError):
    def __init__(self, lock_path: str, holder: dict[str, Any]) -> None:
        self.lock_path = lock_path
        self.holder = holder
        pid = holder.get("pid")
        pid_hint = f" (pid={pid})" if pid else ""
        super().__init__(f"Another gateway already owns this storage{pid_hint}: {lock_path}")


class StorageLock:
    """Exclusive advisory lock on a file inside the storage directory.

    The file records who holds it (pid, port, start time) so a refused start
    can report the owner.
    """

    def __init__(self, path: str | Path, port: int | None = None) -> None:
        self.path = Path(path)
        self.port = port
        self._fh: TextIO | None = None

    def acquire(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fh = open(self.path, "a+", encoding="utf-8")
        fh.seek(0)
        holder = _read_holder(fh)
        try:
            _lock_file(fh)
        except OSError as exc:
            fh.close()
            raise GatewayAlreadyRunning(str(self.path), holder) from exc

        fh.seek(0)
        fh.truncate()
        record = {
            "pid": os.getpid(),
            "port": self.port,
            "started_at": datetime.now(timezone.utc).isoformat(),
        }
        fh.write(orjson.dumps(record).decode() + "\n")
        fh.flush()
        self._fh = fh

    def release(self) -> None:
        fh = self._fh
        if not fh:
            return
        try:
            _unlock_file(fh)
        except OSError:
            pass
        fh.close()
        self._fh = None

    @property
    def held(self) -> bool:
        return self._fh is not None

    def __enter__(self) -> "StorageLock":
        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:  # type: ignore[no-untyped-def]
        self.release()


def _read_holder(fh: TextIO) -> dict[str, Any]:
    try:
        content = fh.read().strip()
    except OSError:
        return {}
    if not content:
        return {}
    try:
        data = orjson.loads(content.splitlines()[0])
    except orjson.JSONDecodeError:
        return {}
    return data if isinstance(data, dict) else {}


def _lock_file(fh: TextIO) -> None:
    if os.name == "nt":
        import msvcrt

        fh.seek(0)
        msvcrt.locking(fh.fileno(), msvcrt.LK_NBLCK, 1)
        return

    import fcntl

    fcntl.flock(fh.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)


def _unlock_file(fh: TextIO) -> None:
    if os.name == "nt":
        import msvcrt

        fh.seek(0)
        msvcrt.locking(fh.fileno(), msvcrt.LK_UNLCK, 1)
        return

    import fcntl

    fcntl.flock(fh.fileno(), fcntl.LOCK_UN)
