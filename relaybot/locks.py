from __future__ import annotations

from contextlib import contextmanager
import os
from pathlib import Path
from typing import IO, Iterator


@contextmanager
def instance_lock(lock_path: Path) -> Iterator[IO[str]]:
    """Hold an exclusive, non-blocking lock on the runtime directory.

    Two relaybot processes sharing one credential directory would open two
    transports for the same account, so the second one refuses to start.
    """

    lock_path.parent.mkdir(parents=True, exist_ok=True)
    handle = lock_path.open("a+", encoding="utf-8")
    locked = False
    try:
        try:
            import fcntl  # type: ignore

            fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except ModuleNotFoundError:
            raise RuntimeError("instance locks require fcntl (not available on this platform)")
        except OSError as exc:
            holder = _lock_holder(lock_path)
            suffix = f", held by pid {holder}" if holder else ""
            raise RuntimeError(f"another relaybot instance is already running (lock: {lock_path}{suffix})") from exc
        locked = True
        handle.seek(0)
        handle.truncate()
        handle.write(f"{os.getpid()}\n")
        handle.flush()
        yield handle
    finally:
        if locked:
            try:
                import fcntl  # type: ignore

                handle.seek(0)
                handle.truncate()
                fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
            except Exception:
                pass
        handle.close()


def _lock_holder(lock_path: Path) -> str:
    try:
        return lock_path.read_text(encoding="utf-8").strip()
    except OSError:
        return ""
