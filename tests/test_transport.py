from __future__ import annotations

import asyncio
import sys
import unittest

from relaybot.events import ConnectionEvent, CredentialsEvent, EventChannels
from relaybot.router import InboundMessage, KIND_EXTENDED_TEXT
from relaybot.runtime_log import RuntimeHooks
from relaybot.transport import BridgeError, BridgeTransport, decode_bridge_event


QUIET = RuntimeHooks(emit_console=False)

BRIDGE_SCRIPT = r"""
import json
import sys


def emit(obj):
    sys.stdout.write(json.dumps(obj) + "\n")
    sys.stdout.flush()


init = json.loads(sys.stdin.readline())
emit({"type": "connecting"})
if init.get("credentials") is None:
    emit({"type": "pairing", "code": "2@pair"})
    emit({"type": "credentials", "credentials": {"token": "fresh"}})
sys.stdout.write("bridge library chatter\n")
sys.stdout.flush()
emit({"type": "open", "account_id": "me@s"})
emit({"type": "message", "id": "m1", "chat_id": "c1", "sender": "p1", "message": {"conversation": "!gpt hi"}})
cmd = json.loads(sys.stdin.readline())
emit({"type": "sent", "ref": cmd["ref"], "id": "out:%s:%s" % (cmd["text"], cmd["quoted_id"])})
emit({"type": "close", "code": 401, "detail": "logged out"})
emit({"type": "close", "code": 500})
sys.stdin.readline()
"""

EXITING_SCRIPT = r"""
import sys

sys.stdin.readline()
sys.stderr.write("bridge crashed\n")
sys.stderr.flush()
sys.exit(3)
"""


async def _next(queue: asyncio.Queue, timeout: float = 5.0):
    return await asyncio.wait_for(queue.get(), timeout=timeout)


class TestDecodeBridgeEvent(unittest.TestCase):
    def test_connection_events(self) -> None:
        self.assertEqual(ConnectionEvent(kind="connecting"), decode_bridge_event({"type": "connecting"}))
        self.assertEqual(
            ConnectionEvent(kind="pairing", pairing_code="2@abc"),
            decode_bridge_event({"type": "pairing", "code": "2@abc"}),
        )
        self.assertEqual(
            ConnectionEvent(kind="close", code=428, detail="lost"),
            decode_bridge_event({"type": "close", "code": 428, "detail": "lost"}),
        )
        self.assertEqual(
            ConnectionEvent(kind="open", account_id="me"),
            decode_bridge_event({"type": "OPEN", "account_id": "me"}),
        )

    def test_credentials_and_messages(self) -> None:
        event = decode_bridge_event({"type": "credentials", "credentials": {"k": "v"}})
        self.assertEqual(CredentialsEvent(credentials={"k": "v"}), event)

        message = decode_bridge_event(
            {
                "type": "message",
                "id": "m9",
                "chat_id": "c9",
                "from_me": True,
                "message": {"extendedTextMessage": {"text": "!gpt hi"}},
            }
        )
        assert isinstance(message, InboundMessage)
        self.assertEqual("c9", message.sender)
        self.assertTrue(message.from_me)
        self.assertEqual(KIND_EXTENDED_TEXT, message.content.kind)

    def test_malformed_payloads_dropped(self) -> None:
        self.assertIsNone(decode_bridge_event(["not", "a", "dict"]))
        self.assertIsNone(decode_bridge_event({"type": "pairing"}))
        self.assertIsNone(decode_bridge_event({"type": "credentials", "credentials": "x"}))
        self.assertIsNone(decode_bridge_event({"type": "message", "id": "m1"}))
        self.assertIsNone(decode_bridge_event({"type": "presence"}))


class TestBridgeTransport(unittest.TestCase):
    def test_full_exchange_with_subprocess_bridge(self) -> None:
        async def scenario() -> dict:
            channels = EventChannels()
            transport = BridgeTransport([sys.executable, "-c", BRIDGE_SCRIPT], hooks=QUIET)
            await transport.start(None, channels)
            try:
                kinds = [(await _next(channels.connection)).kind for _ in range(3)]
                pairing_creds = await _next(channels.credentials)
                message = await _next(channels.messages)
                sent_id = await transport.send_text("c1", "hello", quoted_id="m1")
                close = await _next(channels.connection)
                await asyncio.sleep(0.05)
                extra_close = channels.connection.qsize()
            finally:
                await transport.close()
            return {
                "kinds": kinds,
                "creds": pairing_creds.credentials,
                "message": message,
                "sent_id": sent_id,
                "close": close,
                "extra_close": extra_close,
            }

        result = asyncio.run(scenario())
        self.assertEqual(["connecting", "pairing", "open"], result["kinds"])
        self.assertEqual({"token": "fresh"}, result["creds"])
        self.assertEqual("m1", result["message"].id)
        self.assertEqual("!gpt hi", result["message"].content.text)
        self.assertEqual("out:hello:m1", result["sent_id"])
        self.assertEqual(401, result["close"].code)
        self.assertEqual(0, result["extra_close"])

    def test_bridge_exit_reports_close(self) -> None:
        async def scenario() -> ConnectionEvent:
            channels = EventChannels()
            transport = BridgeTransport([sys.executable, "-c", EXITING_SCRIPT], hooks=QUIET)
            await transport.start({"token": "t"}, channels)
            try:
                return await _next(channels.connection)
            finally:
                await transport.close()

        event = asyncio.run(scenario())
        self.assertEqual("close", event.kind)
        self.assertEqual("bridge_exited", event.code)

    def test_missing_command_fails_to_start(self) -> None:
        with self.assertRaises(BridgeError):
            asyncio.run(BridgeTransport([], hooks=QUIET).start(None, EventChannels()))

    def test_send_after_close_raises(self) -> None:
        async def scenario() -> None:
            transport = BridgeTransport([sys.executable, "-c", EXITING_SCRIPT], hooks=QUIET)
            await transport.start(None, EventChannels())
            await transport.close()
            await transport.send_text("c1", "late")

        with self.assertRaises(BridgeError):
            asyncio.run(scenario())


if __name__ == "__main__":
    unittest.main()
