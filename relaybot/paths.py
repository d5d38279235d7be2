from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path


CONFIG_FILE_NAME = "relaybot.toml"
RUNTIME_DIR_NAME = ".relaybot"


def find_workspace_root(start: Path | None = None) -> Path:
    """Locate the workspace that owns `relaybot.toml`.

    Walks up from `start` (default: cwd). When no config sentinel is found the
    start directory is used, so a bare checkout still runs with defaults.
    """

    here = (start or Path.cwd()).resolve()
    for candidate in [here, *here.parents]:
        if (candidate / CONFIG_FILE_NAME).exists():
            return candidate
    return here


def workspace_root() -> Path:
    return find_workspace_root()


def config_path(root: Path | None = None) -> Path:
    return (root or workspace_root()) / CONFIG_FILE_NAME


@dataclass(frozen=True)
class RuntimePaths:
    root: Path
    auth_dir: Path
    locks_dir: Path
    logs_dir: Path
    state_dir: Path

    @property
    def runtime_log(self) -> Path:
        return self.logs_dir / "runtime.log"

    @property
    def status_json(self) -> Path:
        return self.state_dir / "status.json"

    @property
    def pairing_svg(self) -> Path:
        return self.state_dir / "pairing.svg"

    @property
    def events_jsonl(self) -> Path:
        return self.state_dir / "events.jsonl"

    @property
    def instance_lock(self) -> Path:
        return self.locks_dir / "relaybot.lock"


def runtime_paths(root: Path | None = None) -> RuntimePaths:
    base = (root or workspace_root()) / RUNTIME_DIR_NAME
    auth_dir = base / "auth"
    return RuntimePaths(
        root=base,
        auth_dir=auth_dir,
        locks_dir=base / "locks",
        logs_dir=base / "logs",
        state_dir=base / "state",
    )


def ensure_runtime_dirs(paths: RuntimePaths | None = None) -> RuntimePaths:
    # auth/ is created lazily by CredentialStore so a wipe leaves no trace.
    paths = paths or runtime_paths()
    paths.root.mkdir(parents=True, exist_ok=True)
    paths.locks_dir.mkdir(parents=True, exist_ok=True)
    paths.logs_dir.mkdir(parents=True, exist_ok=True)
    paths.state_dir.mkdir(parents=True, exist_ok=True)
    return paths
