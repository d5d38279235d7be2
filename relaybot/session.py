from __future__ import annotations

import asyncio
from collections import deque
import contextlib
from dataclasses import dataclass, replace
from datetime import datetime, timezone
import enum
import random
from typing import Callable, Iterable

from .completion import CompletionGateway
from .credentials import CredentialStore
from .errors import (
    CloseReason,
    CompletionFailed,
    NoBackendAvailable,
    TerminalClose,
    TransportClosed,
    classify_close,
)
from .events import AuditBus, ConnectionEvent, CredentialsEvent, EventChannels
from .pairing import PairingCode, PairingRenderer, issue_pairing_code, render_pairing_svg
from .router import CompletionRequest, InboundMessage, MessageRouter
from .runtime_log import RuntimeHooks, emit_runtime_log, summarize_error
from .transport import Transport


SEEN_MESSAGE_CACHE_MAX = 4096
SENT_MESSAGE_CACHE_MAX = 512

REPLY_ERROR_TEXT = "Sorry, I encountered an error processing your request."
REPLY_UNAVAILABLE_TEXT = "The completion service is unavailable right now. Please try again later."
REPLY_EMPTY_PROMPT_TEXT = "Usage: !gpt <your question>"


class SessionState(str, enum.Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    AWAITING_PAIRING = "awaiting_pairing"
    AUTHENTICATING = "authenticating"
    OPEN = "open"
    CLOSED = "closed"


@dataclass
class Session:
    generation: int
    state: SessionState = SessionState.IDLE
    pairing_code: PairingCode | None = None
    last_close_reason: CloseReason | None = None
    account_id: str = ""
    opened_at: datetime | None = None


@dataclass(frozen=True)
class SessionSettings:
    reconnect_base_s: float = 3.0
    reconnect_max_s: float = 60.0
    max_reconnect_attempts: int = 0


SessionObserver = Callable[[Session], None]


def reconnect_delay(attempt: int, *, base_s: float, max_s: float) -> float:
    base = min(max_s, base_s * (2 ** max(0, attempt)))
    jitter = random.uniform(0.0, base * 0.2)
    return base + jitter


class _RecentIds:
    def __init__(self, limit: int) -> None:
        self._limit = limit
        self._ids: set[str] = set()
        self._order: deque[str] = deque()

    def __contains__(self, value: str) -> bool:
        return value in self._ids

    def add(self, value: str) -> bool:
        if not value:
            return True
        if value in self._ids:
            return False
        self._ids.add(value)
        self._order.append(value)
        while len(self._order) > self._limit:
            self._ids.discard(self._order.popleft())
        return True


class SessionManager:
    """Owns the one live connection and answers triggered messages.

    `run()` is a single loop: each iteration builds a fresh Session and
    transport, consumes that transport's event channels until it closes, then
    decides between wiping credentials (terminal close) and backing off
    (anything else). The next transport is only created after the previous
    one has been closed.
    """

    def __init__(
        self,
        *,
        transport_factory: Callable[[], Transport],
        store: CredentialStore,
        router: MessageRouter,
        gateway: CompletionGateway,
        settings: SessionSettings | None = None,
        renderer: PairingRenderer = render_pairing_svg,
        hooks: RuntimeHooks | None = None,
        bus: AuditBus | None = None,
        observers: Iterable[SessionObserver] = (),
    ) -> None:
        self._transport_factory = transport_factory
        self._store = store
        self._router = router
        self._gateway = gateway
        self._settings = settings or SessionSettings()
        self._renderer = renderer
        self._hooks = hooks
        self._bus = bus
        self._observers = list(observers)
        self._generation = 0
        self._session = Session(generation=0)
        self._transport: Transport | None = None
        self._channels: EventChannels | None = None
        self._stopping = False
        self._stop_event = asyncio.Event()
        self._handlers: set[asyncio.Task[None]] = set()
        self._seen = _RecentIds(SEEN_MESSAGE_CACHE_MAX)
        self._sent = _RecentIds(SENT_MESSAGE_CACHE_MAX)
        self.reconnects_exhausted = False

    @property
    def session(self) -> Session:
        return replace(self._session)

    def add_observer(self, observer: SessionObserver) -> None:
        self._observers.append(observer)

    def stop(self) -> None:
        if self._stopping:
            return
        self._stopping = True
        self._stop_event.set()
        if self._channels is not None:
            self._channels.connection.put_nowait(ConnectionEvent(kind="close", code="shutdown"))

    async def run(self) -> None:
        attempt = 0
        try:
            while not self._stopping:
                session = self._begin_session()
                try:
                    await self._run_session(session)
                except TransportClosed as exc:
                    # Terminal and recoverable closes share one budget; only a
                    # session that reached `open` resets it.
                    if session.opened_at is not None:
                        attempt = 0
                    if self._stopping:
                        break
                    if isinstance(exc, TerminalClose):
                        self._log(f"session: {exc}; wiping credentials before a fresh pairing", level="warn")
                        self._wipe_credentials(exc.reason)
                    limit = self._settings.max_reconnect_attempts
                    if limit and attempt >= limit:
                        self.reconnects_exhausted = True
                        self._log(
                            f"session: {exc}; giving up after {attempt} reconnect attempts",
                            level="error",
                        )
                        self._publish("session.gave_up", str(exc), severity="error", attempts=attempt)
                        break
                    delay = reconnect_delay(
                        attempt,
                        base_s=self._settings.reconnect_base_s,
                        max_s=self._settings.reconnect_max_s,
                    )
                    attempt += 1
                    self._log(f"session: {exc}; reconnecting in {delay:.1f}s", level="warn")
                    await self._pause(delay)
        finally:
            await self.drain()

    async def drain(self) -> None:
        while self._handlers:
            await asyncio.gather(*list(self._handlers), return_exceptions=True)

    def _begin_session(self) -> Session:
        self._generation += 1
        session = Session(generation=self._generation)
        self._session = session
        self._set_state(session, SessionState.CONNECTING)
        return session

    async def _run_session(self, session: Session) -> None:
        channels = EventChannels()
        transport = self._transport_factory()
        self._channels = channels
        self._transport = transport
        if self._stopping:
            channels.connection.put_nowait(ConnectionEvent(kind="close", code="shutdown"))
        reason: CloseReason
        try:
            try:
                await transport.start(self._store.load(), channels)
            except asyncio.CancelledError:
                raise
            except Exception as exc:  # noqa: BLE001
                reason = classify_close("start_failed", summarize_error(exc))
            else:
                reason = await self._consume_until_close(session, channels)
        finally:
            self._transport = None
            self._channels = None
            with contextlib.suppress(Exception):
                await transport.close()

        session.pairing_code = None
        session.last_close_reason = reason
        self._set_state(session, SessionState.CLOSED)
        self._publish(
            "session.closed",
            reason.label,
            severity="warn",
            generation=session.generation,
            code=reason.code,
            terminal=reason.terminal,
        )
        raise TransportClosed.for_reason(reason)

    async def _consume_until_close(self, session: Session, channels: EventChannels) -> CloseReason:
        credentials_task = asyncio.create_task(self._consume_credentials(channels))
        messages_task = asyncio.create_task(self._consume_messages(channels))
        try:
            return await self._consume_connection(session, channels)
        finally:
            for task in (credentials_task, messages_task):
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task
            for event in channels.drain_credentials():
                self._save_credentials(event)
            dropped = channels.messages.qsize()
            if dropped:
                self._log(f"session: dropped {dropped} undelivered message(s) at close", level="debug")

    async def _consume_connection(self, session: Session, channels: EventChannels) -> CloseReason:
        while True:
            event = await channels.connection.get()
            if event.kind == "close":
                return classify_close(event.code, event.detail)
            self._apply_connection_event(session, event)

    def _apply_connection_event(self, session: Session, event: ConnectionEvent) -> None:
        if event.kind == "connecting":
            self._set_state(session, SessionState.CONNECTING)
        elif event.kind == "pairing":
            try:
                code = issue_pairing_code(event.pairing_code, renderer=self._renderer)
            except Exception as exc:  # noqa: BLE001
                self._log(f"pairing: failed to render pairing code: {summarize_error(exc)}", level="error")
                return
            replaced = session.pairing_code is not None
            session.pairing_code = code
            self._set_state(session, SessionState.AWAITING_PAIRING)
            self._log("pairing: new code issued" + (" (previous code invalidated)" if replaced else ""))
        elif event.kind == "pairing_expired":
            session.pairing_code = None
            self._log("pairing: code expired; waiting for a new one")
            self._set_state(session, SessionState.AWAITING_PAIRING)
        elif event.kind == "authenticating":
            self._set_state(session, SessionState.AUTHENTICATING)
        elif event.kind == "open":
            session.pairing_code = None
            session.account_id = event.account_id
            session.opened_at = datetime.now(tz=timezone.utc)
            self._set_state(session, SessionState.OPEN)
            suffix = f" as {event.account_id}" if event.account_id else ""
            self._log(f"session: connected{suffix}")

    async def _consume_credentials(self, channels: EventChannels) -> None:
        while True:
            event = await channels.credentials.get()
            self._save_credentials(event)

    def _save_credentials(self, event: CredentialsEvent) -> None:
        try:
            self._store.save(event.credentials)
        except Exception as exc:  # noqa: BLE001
            self._log(f"credentials: save failed: {summarize_error(exc)}", level="error")
            return
        self._publish("credentials.saved", "credentials updated")

    def _wipe_credentials(self, reason: CloseReason) -> None:
        try:
            removed = self._store.wipe()
        except Exception as exc:  # noqa: BLE001
            self._log(f"credentials: wipe failed: {summarize_error(exc)}", level="error")
            return
        self._log("credentials: wiped" if removed else "credentials: nothing to wipe")
        self._publish("credentials.wiped", reason.label, severity="warn", code=reason.code)

    async def _consume_messages(self, channels: EventChannels) -> None:
        while True:
            message = await channels.messages.get()
            self._dispatch(message)

    def _dispatch(self, message: InboundMessage) -> None:
        if not self._seen.add(message.id):
            return
        if message.id and message.id in self._sent:
            return
        request = self._router.route(message)
        if request is None:
            self._log(f"message from {message.sender}: not triggered", level="debug")
            return
        self._log(f"message from {message.sender}: prompt received ({len(request.prompt)} chars)")
        task = asyncio.create_task(self._answer(request))
        self._handlers.add(task)
        task.add_done_callback(self._handlers.discard)

    async def _answer(self, request: CompletionRequest) -> None:
        try:
            reply = await self._reply_text(request)
            await self._send_reply(request, reply)
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # noqa: BLE001
            self._log(f"reply to {request.sender} failed: {summarize_error(exc)}", level="error")

    async def _reply_text(self, request: CompletionRequest) -> str:
        if not request.prompt.strip():
            return REPLY_EMPTY_PROMPT_TEXT
        try:
            return await self._gateway.complete(request.prompt)
        except NoBackendAvailable as exc:
            self._log(f"completion for {request.sender}: {exc}", level="warn")
            return REPLY_UNAVAILABLE_TEXT
        except CompletionFailed as exc:
            self._log(f"completion for {request.sender} failed: {exc}", level="warn")
            self._publish("completion.failed", str(exc), severity="warn", kind=exc.kind.value, candidate=exc.candidate)
            return REPLY_ERROR_TEXT

    async def _send_reply(self, request: CompletionRequest, text: str) -> None:
        transport = self._transport
        if transport is None:
            self._log(f"reply to {request.sender} dropped: no live connection", level="warn")
            return
        sent_id = await transport.send_text(request.chat_id, text, quoted_id=request.message_id or None)
        if sent_id:
            self._sent.add(sent_id)

    async def _pause(self, delay: float) -> None:
        if delay <= 0:
            await asyncio.sleep(0)
            return
        with contextlib.suppress(asyncio.TimeoutError):
            await asyncio.wait_for(self._stop_event.wait(), timeout=delay)

    def _set_state(self, session: Session, state: SessionState) -> None:
        if session is not self._session:
            return
        session.state = state
        self._publish("session.state", state.value, generation=session.generation, state=state.value)
        snapshot = replace(session)
        for observer in list(self._observers):
            try:
                observer(snapshot)
            except Exception as exc:  # noqa: BLE001
                self._log(f"session observer failed: {summarize_error(exc)}", level="warn")

    def _log(self, message: str, *, level: str = "info") -> None:
        emit_runtime_log(message, level=level, hooks=self._hooks)

    def _publish(self, event_type: str, message: str, *, severity: str = "info", **metadata) -> None:
        if self._bus is not None:
            self._bus.publish(event_type, message, severity=severity, **metadata)
