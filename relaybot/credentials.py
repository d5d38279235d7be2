from __future__ import annotations

import contextlib
import json
import os
from pathlib import Path
import shutil
import tempfile
from typing import Any


CREDENTIALS_VERSION = 1


def _chmod_600(path: Path) -> None:
    try:
        os.chmod(path, 0o600)
    except OSError:
        pass


class CredentialStore:
    """Session material that lets the bridge reconnect without re-pairing.

    Everything lives under one directory so a terminal logout can remove it in
    a single recursive delete.
    """

    def __init__(self, auth_dir: Path, *, file_name: str = "credentials.json") -> None:
        self.auth_dir = auth_dir
        self.path = auth_dir / file_name

    def exists(self) -> bool:
        return self.path.exists()

    def load(self) -> dict[str, Any] | None:
        if not self.path.exists():
            return None
        try:
            with self.path.open("r", encoding="utf-8") as handle:
                data = json.load(handle)
        except (OSError, ValueError):
            return None
        if not isinstance(data, dict) or data.get("version") != CREDENTIALS_VERSION:
            return None
        credentials = data.get("credentials")
        return credentials if isinstance(credentials, dict) else None

    def save(self, credentials: dict[str, Any]) -> None:
        if not isinstance(credentials, dict):
            raise TypeError("credentials must be a JSON object")
        self.auth_dir.mkdir(parents=True, exist_ok=True)
        payload = json.dumps(
            {"version": CREDENTIALS_VERSION, "credentials": credentials},
            indent=2,
            sort_keys=True,
            ensure_ascii=True,
        )
        fd, tmp_name = tempfile.mkstemp(prefix=".credentials-", suffix=".tmp", dir=self.auth_dir)
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(payload)
                handle.write("\n")
                handle.flush()
                os.fsync(handle.fileno())
            _chmod_600(tmp_path)
            os.replace(tmp_path, self.path)
        except BaseException:
            with contextlib.suppress(OSError):
                tmp_path.unlink()
            raise

    def wipe(self) -> bool:
        if not self.auth_dir.exists():
            return False
        shutil.rmtree(self.auth_dir)
        return True
