from __future__ import annotations

import asyncio
import contextlib
from dataclasses import asdict, dataclass, replace
from datetime import datetime, timezone
import json
import os
from pathlib import Path
import tempfile
from typing import Any, Callable

from .errors import PairingExpired
from .pairing import render_pairing_ascii
from .runtime_log import RuntimeHooks, emit_runtime_log
from .session import Session, SessionState


PHASE_AWAITING_PAIRING = "awaiting_pairing"
PHASE_CONNECTED = "connected"
PHASE_INITIALIZING = "initializing"

_PHASE_LABELS = {
    PHASE_AWAITING_PAIRING: "awaiting pairing",
    PHASE_CONNECTED: "connected",
    PHASE_INITIALIZING: "initializing",
}


@dataclass(frozen=True)
class StatusSnapshot:
    phase: str
    state: str
    generation: int
    pairing_image: str | None = None
    pairing_expires_at: str | None = None
    backend: str | None = None
    last_close: str | None = None
    updated_at: str = ""

    def to_json(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_json(cls, data: dict[str, Any]) -> "StatusSnapshot":
        return cls(
            phase=str(data.get("phase") or PHASE_INITIALIZING),
            state=str(data.get("state") or SessionState.IDLE.value),
            generation=int(data.get("generation") or 0),
            pairing_image=data.get("pairing_image") or None,
            pairing_expires_at=data.get("pairing_expires_at") or None,
            backend=data.get("backend") or None,
            last_close=data.get("last_close") or None,
            updated_at=str(data.get("updated_at") or ""),
        )

    def as_of(self, now: datetime) -> "StatusSnapshot":
        """The snapshot with a lapsed pairing code demoted to `initializing`."""

        if self.phase != PHASE_AWAITING_PAIRING or not self.pairing_expires_at:
            return self
        try:
            expires_at = datetime.fromisoformat(self.pairing_expires_at)
        except ValueError:
            return self
        if now < expires_at:
            return self
        return replace(self, phase=PHASE_INITIALIZING, pairing_image=None, pairing_expires_at=None)


def snapshot_for(session: Session, *, backend: str | None = None, now: datetime | None = None) -> StatusSnapshot:
    now = now or datetime.now(tz=timezone.utc)
    pairing_image = None
    pairing_expires_at = None
    if session.state == SessionState.OPEN:
        phase = PHASE_CONNECTED
    elif session.pairing_code is not None:
        try:
            code = session.pairing_code.require_valid(now)
            pairing_image = code.data_url
            pairing_expires_at = code.expires_at.isoformat()
            phase = PHASE_AWAITING_PAIRING
        except PairingExpired:
            phase = PHASE_INITIALIZING
    else:
        phase = PHASE_INITIALIZING
    return StatusSnapshot(
        phase=phase,
        state=session.state.value,
        generation=session.generation,
        pairing_image=pairing_image,
        pairing_expires_at=pairing_expires_at,
        backend=backend,
        last_close=session.last_close_reason.label if session.last_close_reason else None,
        updated_at=now.replace(microsecond=0).isoformat(),
    )


def format_status_lines(snapshot: StatusSnapshot | None) -> list[str]:
    if snapshot is None:
        return ["status: initializing", "(no status recorded yet; is `relaybot run` active?)"]
    lines = [
        f"status: {_PHASE_LABELS.get(snapshot.phase, snapshot.phase)}",
        f"session state: {snapshot.state} (generation {snapshot.generation})",
        f"completion backend: {snapshot.backend or 'none'}",
    ]
    if snapshot.last_close:
        lines.append(f"last close: {snapshot.last_close}")
    if snapshot.updated_at:
        lines.append(f"updated: {snapshot.updated_at}")
    return lines


def load_status(path: Path, *, now: datetime | None = None) -> StatusSnapshot | None:
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError):
        return None
    if not isinstance(data, dict):
        return None
    return StatusSnapshot.from_json(data).as_of(now or datetime.now(tz=timezone.utc))


class StatusPresenter:
    """Mirrors session state into `status.json` and `pairing.svg`.

    Registered as a session observer; it only reads the snapshot it is given.
    Backend selection events and pairing-code expiry re-render the last
    session seen, since neither changes the session state.
    """

    REFRESH_EVENTS = frozenset({"completion.selected", "completion.unavailable"})

    def __init__(
        self,
        status_path: Path,
        pairing_svg_path: Path,
        *,
        backend_label: Callable[[], str | None] = lambda: None,
        hooks: RuntimeHooks | None = None,
        print_pairing: bool = True,
    ) -> None:
        self.status_path = status_path
        self.pairing_svg_path = pairing_svg_path
        self._backend_label = backend_label
        self._hooks = hooks
        self._print_pairing = print_pairing
        self._last_pairing_raw: str | None = None
        self._session: Session | None = None
        self.latest: StatusSnapshot | None = None

    def __call__(self, session: Session) -> None:
        self.update(session)

    def on_audit_event(self, event: dict[str, Any]) -> None:
        if event.get("type") in self.REFRESH_EVENTS:
            self.refresh()

    def refresh(self) -> StatusSnapshot | None:
        if self._session is None:
            return None
        return self.update(self._session)

    async def watch_pairing_expiry(self, *, interval_s: float = 1.0) -> None:
        while True:
            await asyncio.sleep(interval_s)
            session = self._session
            latest = self.latest
            if session is None or latest is None or latest.phase != PHASE_AWAITING_PAIRING:
                continue
            if session.pairing_code is not None and session.pairing_code.is_expired():
                self.update(session)

    def update(self, session: Session) -> StatusSnapshot:
        self._session = session
        snapshot = snapshot_for(session, backend=self._backend_label())
        self.latest = snapshot
        _write_json_atomic(self.status_path, snapshot.to_json())

        code = session.pairing_code
        if code is not None and snapshot.phase == PHASE_AWAITING_PAIRING:
            if code.raw != self._last_pairing_raw:
                self._last_pairing_raw = code.raw
                self.pairing_svg_path.parent.mkdir(parents=True, exist_ok=True)
                self.pairing_svg_path.write_text(code.svg, encoding="utf-8")
                self._announce_pairing(code.raw)
        else:
            self._last_pairing_raw = None
            with contextlib.suppress(FileNotFoundError):
                self.pairing_svg_path.unlink()
        return snapshot

    def _announce_pairing(self, raw: str) -> None:
        emit_runtime_log(f"pairing: scan the code (image: {self.pairing_svg_path})", hooks=self._hooks)
        if not self._print_pairing or (self._hooks is not None and not self._hooks.emit_console):
            return
        try:
            art = render_pairing_ascii(raw)
        except Exception as exc:  # noqa: BLE001
            emit_runtime_log(f"pairing: terminal rendering failed: {exc}", level="warn", hooks=self._hooks)
            return
        print(art, flush=True)


def _write_json_atomic(path: Path, payload: dict[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=".status-", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            json.dump(payload, handle, indent=2, sort_keys=True)
            handle.write("\n")
        os.replace(tmp_name, path)
    except BaseException:
        with contextlib.suppress(OSError):
            os.unlink(tmp_name)
        raise
