"""Bridge transport: the chat protocol runs in a child process.

The bridge reads newline-delimited JSON commands on stdin (`init`, `send`) and
writes newline-delimited JSON events on stdout (`connecting`, `pairing`,
`pairing_expired`, `authenticating`, `open`, `close`, `credentials`,
`message`, `sent`). Non-JSON stdout lines are ignored so bridge libraries can
keep their own chatter.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import os
import secrets
from typing import Any, Protocol

from .events import CONNECTION_KINDS, ConnectionEvent, CredentialsEvent, EventChannels
from .router import InboundMessage, content_from_payload
from .runtime_log import RuntimeHooks, emit_runtime_log, summarize_text


BRIDGE_STREAM_LIMIT = 4 * 1024 * 1024
BRIDGE_SEND_ACK_TIMEOUT_S = 5.0
BRIDGE_STOP_TIMEOUT_S = 2.0
_TAIL_MAX = 12


class Transport(Protocol):
    async def start(self, credentials: dict[str, Any] | None, channels: EventChannels) -> None: ...

    async def send_text(self, chat_id: str, text: str, *, quoted_id: str | None = None) -> str | None: ...

    async def close(self) -> None: ...


class BridgeError(RuntimeError):
    pass


def decode_bridge_event(payload: Any) -> ConnectionEvent | CredentialsEvent | InboundMessage | None:
    if not isinstance(payload, dict):
        return None
    kind = str(payload.get("type") or "").strip().lower()
    if kind == "credentials":
        credentials = payload.get("credentials")
        if not isinstance(credentials, dict):
            return None
        return CredentialsEvent(credentials=credentials)
    if kind == "message":
        return message_from_payload(payload)
    if kind not in CONNECTION_KINDS:
        return None
    if kind == "pairing":
        code = payload.get("code")
        if not isinstance(code, str) or not code:
            return None
        return ConnectionEvent(kind=kind, pairing_code=code)
    if kind == "close":
        return ConnectionEvent(kind=kind, code=payload.get("code"), detail=str(payload.get("detail") or ""))
    if kind == "open":
        return ConnectionEvent(kind=kind, account_id=str(payload.get("account_id") or ""))
    return ConnectionEvent(kind=kind)


def message_from_payload(payload: dict[str, Any]) -> InboundMessage | None:
    chat_id = payload.get("chat_id")
    if not isinstance(chat_id, str) or not chat_id:
        return None
    sender = payload.get("sender")
    return InboundMessage(
        id=str(payload.get("id") or ""),
        chat_id=chat_id,
        sender=sender if isinstance(sender, str) and sender else chat_id,
        content=content_from_payload(payload.get("message")),
        from_me=payload.get("from_me") is True,
    )


def _try_parse_json_line(line: str) -> Any:
    if not line.startswith("{"):
        return None
    try:
        return json.loads(line)
    except ValueError:
        return None


def _tail_append(tail: list[str], line: str) -> None:
    tail.append(line)
    if len(tail) > _TAIL_MAX:
        del tail[: len(tail) - _TAIL_MAX]


class BridgeTransport:
    def __init__(
        self,
        command: list[str],
        *,
        env: dict[str, str] | None = None,
        hooks: RuntimeHooks | None = None,
    ) -> None:
        self.command = list(command)
        self._env = env
        self._hooks = hooks
        self._proc: asyncio.subprocess.Process | None = None
        self._channels: EventChannels | None = None
        self._stdout_task: asyncio.Task[None] | None = None
        self._stderr_task: asyncio.Task[None] | None = None
        self._stderr_tail: list[str] = []
        self._pending_sends: dict[str, asyncio.Future[str]] = {}
        self._write_lock = asyncio.Lock()
        self._closing = False
        self._close_reported = False

    async def start(self, credentials: dict[str, Any] | None, channels: EventChannels) -> None:
        if not self.command:
            raise BridgeError("bridge command is not configured (set [bridge].command or RELAYBOT_BRIDGE_COMMAND)")
        if self._proc is not None:
            raise BridgeError("bridge transport already started")
        env = os.environ.copy()
        if self._env:
            env.update(self._env)
        self._channels = channels
        self._proc = await asyncio.create_subprocess_exec(
            *self.command,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=env,
            limit=BRIDGE_STREAM_LIMIT,
        )
        self._stdout_task = asyncio.create_task(self._read_events())
        self._stderr_task = asyncio.create_task(self._drain_stderr())
        await self._write({"type": "init", "credentials": credentials})

    async def send_text(self, chat_id: str, text: str, *, quoted_id: str | None = None) -> str | None:
        ref = secrets.token_hex(6)
        loop = asyncio.get_running_loop()
        ack: asyncio.Future[str] = loop.create_future()
        self._pending_sends[ref] = ack
        try:
            await self._write(
                {
                    "type": "send",
                    "ref": ref,
                    "chat_id": chat_id,
                    "text": text,
                    "quoted_id": quoted_id,
                }
            )
            try:
                return await asyncio.wait_for(ack, timeout=BRIDGE_SEND_ACK_TIMEOUT_S)
            except asyncio.TimeoutError:
                return None
        finally:
            self._pending_sends.pop(ref, None)

    async def close(self) -> None:
        self._closing = True
        proc = self._proc
        self._proc = None
        if proc is not None:
            if proc.stdin is not None:
                with contextlib.suppress(Exception):
                    proc.stdin.close()
            if proc.returncode is None:
                with contextlib.suppress(ProcessLookupError):
                    proc.terminate()
                with contextlib.suppress(Exception):
                    await asyncio.wait_for(proc.wait(), timeout=BRIDGE_STOP_TIMEOUT_S)
            if proc.returncode is None:
                with contextlib.suppress(ProcessLookupError):
                    proc.kill()
                with contextlib.suppress(Exception):
                    await proc.wait()
        for task in (self._stdout_task, self._stderr_task):
            if task is None:
                continue
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError, Exception):
                await task
        self._stdout_task = None
        self._stderr_task = None
        for ack in self._pending_sends.values():
            if not ack.done():
                ack.cancel()
        self._pending_sends.clear()

    async def _write(self, payload: dict[str, Any]) -> None:
        proc = self._proc
        if proc is None or proc.stdin is None or proc.returncode is not None:
            raise BridgeError("bridge process is not running")
        line = json.dumps(payload, ensure_ascii=True) + "\n"
        async with self._write_lock:
            try:
                proc.stdin.write(line.encode("utf-8"))
                await proc.stdin.drain()
            except (BrokenPipeError, ConnectionResetError) as exc:
                raise BridgeError(f"bridge stdin closed: {exc}") from exc

    async def _read_events(self) -> None:
        proc = self._proc
        assert proc is not None and proc.stdout is not None
        while True:
            try:
                chunk = await proc.stdout.readline()
            except ValueError:
                # Line over the stream limit; skip it rather than kill the session.
                emit_runtime_log("bridge: dropped oversized output line", level="warn", hooks=self._hooks)
                continue
            if not chunk:
                break
            line = chunk.decode("utf-8", errors="replace").strip()
            if not line:
                continue
            payload = _try_parse_json_line(line)
            if payload is None:
                emit_runtime_log(f"bridge: {summarize_text(line)}", level="debug", hooks=self._hooks)
                continue
            self._dispatch(payload)

        rc = await proc.wait()
        if self._closing or self._close_reported:
            return
        detail = "\n".join(self._stderr_tail[-4:]).strip() or f"exit={rc}"
        self._report_close("bridge_exited", summarize_text(detail))

    def _dispatch(self, payload: dict[str, Any]) -> None:
        if str(payload.get("type") or "").lower() == "sent":
            ack = self._pending_sends.get(str(payload.get("ref") or ""))
            if ack is not None and not ack.done():
                ack.set_result(str(payload.get("id") or ""))
            return
        event = decode_bridge_event(payload)
        channels = self._channels
        if event is None or channels is None:
            return
        if isinstance(event, CredentialsEvent):
            channels.credentials.put_nowait(event)
        elif isinstance(event, InboundMessage):
            channels.messages.put_nowait(event)
        else:
            if event.kind == "close":
                if self._close_reported:
                    return
                self._close_reported = True
            channels.connection.put_nowait(event)

    def _report_close(self, code: str, detail: str) -> None:
        if self._close_reported or self._channels is None:
            return
        self._close_reported = True
        self._channels.connection.put_nowait(ConnectionEvent(kind="close", code=code, detail=detail))

    async def _drain_stderr(self) -> None:
        proc = self._proc
        if proc is None or proc.stderr is None:
            return
        while True:
            chunk = await proc.stderr.readline()
            if not chunk:
                break
            line = chunk.decode("utf-8", errors="replace").strip()
            if line:
                _tail_append(self._stderr_tail, line)
