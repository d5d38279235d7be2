from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable

from relaybot.errors import BackendError, FailureKind
from relaybot.events import EventChannels
from relaybot.router import InboundMessage, MessageContent


Script = Callable[[EventChannels, "FakeTransport"], Awaitable[None]]


def text_message(
    text: str | None = None,
    *,
    message_id: str = "m1",
    chat_id: str = "chat-1",
    sender: str = "peer-1",
    from_me: bool = False,
    extended_text: str | None = None,
    caption: str | None = None,
) -> InboundMessage:
    return InboundMessage(
        id=message_id,
        chat_id=chat_id,
        sender=sender,
        content=MessageContent(kind="text", text=text, extended_text=extended_text, caption=caption),
        from_me=from_me,
    )


def fake_svg(raw: str) -> str:
    return f"<svg data-code='{raw}'/>"


class FakeTransport:
    def __init__(self, script: Script | None, *, timeline: list[tuple], tracker: "ActiveTracker", fail_start: bool = False) -> None:
        self._script = script
        self._timeline = timeline
        self._tracker = tracker
        self._fail_start = fail_start
        self._task: asyncio.Task[None] | None = None
        self.channels: EventChannels | None = None
        self.credentials: dict[str, Any] | None = None
        self.sent: list[tuple[str, str, str | None]] = []
        self.closed = False

    async def start(self, credentials: dict[str, Any] | None, channels: EventChannels) -> None:
        self._timeline.append(("start", credentials))
        if self._fail_start:
            raise RuntimeError("bridge failed to launch")
        self._tracker.opened()
        self.credentials = credentials
        self.channels = channels
        if self._script is not None:
            self._task = asyncio.create_task(self._script(channels, self))

    async def send_text(self, chat_id: str, text: str, *, quoted_id: str | None = None) -> str | None:
        if self.closed:
            raise RuntimeError("transport closed")
        self.sent.append((chat_id, text, quoted_id))
        return f"out-{len(self.sent)}"

    async def close(self) -> None:
        if not self.closed and self.channels is not None:
            self._tracker.closed()
        self.closed = True
        self._timeline.append(("close",))
        if self._task is not None and not self._task.done():
            self._task.cancel()

    async def wait_for_sent(self, count: int, *, timeout: float = 2.0) -> None:
        async def _poll() -> None:
            while len(self.sent) < count:
                await asyncio.sleep(0.001)

        await asyncio.wait_for(_poll(), timeout=timeout)


class ActiveTracker:
    def __init__(self) -> None:
        self.active = 0
        self.max_active = 0

    def opened(self) -> None:
        self.active += 1
        self.max_active = max(self.max_active, self.active)

    def closed(self) -> None:
        self.active -= 1


class ScriptedTransportFactory:
    """Hands out one FakeTransport per connect attempt, following `scripts`.

    Once the scripts run out the next transport stops the manager, so every
    test run terminates.
    """

    def __init__(self, scripts: list[Script | None], *, fail_start: set[int] | None = None) -> None:
        self.scripts = list(scripts)
        self.fail_start = set(fail_start or set())
        self.timeline: list[tuple] = []
        self.tracker = ActiveTracker()
        self.transports: list[FakeTransport] = []
        self.manager = None
        self.on_create: Callable[[int], None] | None = None

    def __call__(self) -> FakeTransport:
        index = len(self.transports)
        if self.on_create is not None:
            self.on_create(index)
        if index < len(self.scripts):
            script = self.scripts[index]
        else:
            script = self._stop_script
        transport = FakeTransport(
            script,
            timeline=self.timeline,
            tracker=self.tracker,
            fail_start=index in self.fail_start,
        )
        self.transports.append(transport)
        return transport

    async def _stop_script(self, channels: EventChannels, transport: FakeTransport) -> None:
        assert self.manager is not None
        self.manager.stop()


class FakeBackend:
    """Completion backend whose answer per model is scripted.

    An outcome is a string (returned), a FailureKind (raised as BackendError)
    or an async callable taking the prompt.
    """

    name = "fake"

    def __init__(self, outcomes: dict[str, Any], *, configured: bool = True) -> None:
        self.outcomes = dict(outcomes)
        self._configured = configured
        self.calls: list[tuple[str, str]] = []

    def configured(self) -> bool:
        return self._configured

    async def generate(self, model: str, prompt: str) -> str:
        self.calls.append((model, prompt))
        outcome = self.outcomes.get(model, FailureKind.NOT_FOUND)
        if isinstance(outcome, FailureKind):
            raise BackendError(outcome, "scripted failure")
        if isinstance(outcome, BaseException):
            raise outcome
        if callable(outcome):
            return await outcome(prompt)
        return str(outcome)
