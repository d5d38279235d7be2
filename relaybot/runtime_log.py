from __future__ import annotations

import contextlib
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from pathlib import Path
import sys
from typing import Callable


ERROR_SUMMARY_MAX_CHARS = 220
_STDERR_LEVELS = {"warn", "error"}


@dataclass(frozen=True)
class RuntimeHooks:
    log: Callable[[str, str], None] | None = None
    emit_console: bool = True
    log_file: Path | None = None
    debug: bool = False


def emit_runtime_log(
    message: str,
    *,
    level: str = "info",
    hooks: RuntimeHooks | None = None,
) -> None:
    if level == "debug" and not (hooks and hooks.debug):
        return
    if hooks and hooks.log:
        hooks.log(level, message)
    if hooks and hooks.log_file is not None:
        append_runtime_log(hooks.log_file, level=level, message=message)
    if hooks is None or hooks.emit_console:
        print(message, file=sys.stderr if level in _STDERR_LEVELS else sys.stdout)


def append_runtime_log(log_file: Path, *, level: str, message: str) -> None:
    normalized_message = " ".join(message.split())
    stamp = datetime.now(tz=timezone.utc).replace(microsecond=0).isoformat()
    line = f"{stamp} [{level.lower()}] {normalized_message}\n"
    with contextlib.suppress(Exception):
        log_file.parent.mkdir(parents=True, exist_ok=True)
        with log_file.open("a", encoding="utf-8") as handle:
            handle.write(line)


def hooks_with_log_file(hooks: RuntimeHooks | None, log_file: Path) -> RuntimeHooks:
    if hooks is None:
        return RuntimeHooks(log_file=log_file)
    if hooks.log_file is not None:
        return hooks
    return replace(hooks, log_file=log_file)


def summarize_error(error: BaseException) -> str:
    lines = str(error).strip().splitlines()
    if not lines or not lines[0].strip():
        return error.__class__.__name__
    return summarize_text(lines[0])


def summarize_text(text: str) -> str:
    compact = " ".join((text or "").split())
    if len(compact) > ERROR_SUMMARY_MAX_CHARS:
        return f"{compact[: ERROR_SUMMARY_MAX_CHARS - 3]}..."
    return compact
