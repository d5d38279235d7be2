from __future__ import annotations

import asyncio
from collections.abc import Callable
import contextlib
from dataclasses import dataclass, field
from datetime import datetime, timezone
import inspect
import itertools
import json
from pathlib import Path
from typing import Any

from .router import InboundMessage


CONNECTION_KINDS = frozenset({"connecting", "pairing", "pairing_expired", "authenticating", "open", "close"})

AuditHandler = Callable[[dict[str, Any]], Any]


@dataclass(frozen=True)
class ConnectionEvent:
    kind: str
    code: object = None
    detail: str = ""
    pairing_code: str = ""
    account_id: str = ""


@dataclass(frozen=True)
class CredentialsEvent:
    credentials: dict[str, Any] = field(default_factory=dict)


class EventChannels:
    """One queue per transport event category.

    The transport only produces into these queues and the session manager only
    consumes from them, so a scripted producer is enough to drive a session in
    tests.
    """

    def __init__(self) -> None:
        self.connection: asyncio.Queue[ConnectionEvent] = asyncio.Queue()
        self.credentials: asyncio.Queue[CredentialsEvent] = asyncio.Queue()
        self.messages: asyncio.Queue[InboundMessage] = asyncio.Queue()

    def connection_event(self, kind: str, **kwargs: Any) -> None:
        if kind not in CONNECTION_KINDS:
            raise ValueError(f"unknown connection event kind: {kind}")
        self.connection.put_nowait(ConnectionEvent(kind=kind, **kwargs))

    def credentials_event(self, credentials: dict[str, Any]) -> None:
        self.credentials.put_nowait(CredentialsEvent(credentials=dict(credentials)))

    def message_event(self, message: InboundMessage) -> None:
        self.messages.put_nowait(message)

    def drain_credentials(self) -> list[CredentialsEvent]:
        pending: list[CredentialsEvent] = []
        while True:
            try:
                pending.append(self.credentials.get_nowait())
            except asyncio.QueueEmpty:
                return pending


def utc_now_iso() -> str:
    return datetime.now(tz=timezone.utc).replace(microsecond=0).isoformat()


class AuditBus:
    """Pub/sub for session milestones with an optional JSONL audit trail."""

    def __init__(self, log_path: Path | None = None) -> None:
        self._log_path = log_path
        self._handlers: list[AuditHandler] = []
        self._sequence = itertools.count(1)
        self.events_written = 0
        if self._log_path is not None:
            self._log_path.parent.mkdir(parents=True, exist_ok=True)

    def subscribe(self, handler: AuditHandler) -> Callable[[], None]:
        self._handlers.append(handler)

        def _unsubscribe() -> None:
            with contextlib.suppress(ValueError):
                self._handlers.remove(handler)

        return _unsubscribe

    def publish(self, event_type: str, message: str = "", *, severity: str = "info", **metadata: Any) -> dict[str, Any]:
        event = {
            "seq": next(self._sequence),
            "ts": utc_now_iso(),
            "type": event_type,
            "severity": severity.lower(),
            "message": message,
            "metadata": metadata,
        }
        self._append_to_disk(event)
        self._dispatch(event)
        return event

    def _append_to_disk(self, event: dict[str, Any]) -> None:
        if self._log_path is None:
            return
        with contextlib.suppress(OSError, TypeError, ValueError):
            with self._log_path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(event, sort_keys=True, ensure_ascii=True, default=str))
                handle.write("\n")
            self.events_written += 1

    def _dispatch(self, event: dict[str, Any]) -> None:
        for handler in list(self._handlers):
            try:
                result = handler(event)
            except Exception:  # noqa: BLE001
                continue
            if inspect.isawaitable(result):
                try:
                    loop = asyncio.get_running_loop()
                except RuntimeError:
                    if inspect.iscoroutine(result):
                        result.close()
                    continue
                loop.create_task(result)
