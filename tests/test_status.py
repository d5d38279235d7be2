from __future__ import annotations

import asyncio
import base64
import contextlib
from datetime import datetime, timedelta, timezone
import json
from pathlib import Path
from tempfile import TemporaryDirectory
import unittest

from relaybot.cli import build_status_presenter
from relaybot.completion import BackendCandidate, CompletionGateway
from relaybot.errors import PairingExpired, classify_close
from relaybot.events import AuditBus
from relaybot.pairing import PairingCode, issue_pairing_code, render_pairing_ascii, render_pairing_svg
from relaybot.paths import runtime_paths
from relaybot.runtime_log import RuntimeHooks
from relaybot.session import Session, SessionState
from relaybot.status import (
    PHASE_AWAITING_PAIRING,
    PHASE_CONNECTED,
    PHASE_INITIALIZING,
    StatusPresenter,
    StatusSnapshot,
    format_status_lines,
    load_status,
    snapshot_for,
)
from tests.helpers import FakeBackend, fake_svg


NOW = datetime(2026, 1, 2, 3, 4, 5, tzinfo=timezone.utc)
QUIET = RuntimeHooks(emit_console=False)


def _code(raw: str = "2@pair", *, issued_at: datetime = NOW) -> PairingCode:
    return PairingCode(raw=raw, svg=fake_svg(raw), issued_at=issued_at)


class TestPairingCode(unittest.TestCase):
    def test_svg_rendering_produces_markup(self) -> None:
        svg = render_pairing_svg("2@abc,def,ghi")
        self.assertIn("<svg", svg)

    def test_ascii_rendering_is_multiline(self) -> None:
        art = render_pairing_ascii("2@abc")
        self.assertGreater(len(art.splitlines()), 10)

    def test_issue_uses_renderer(self) -> None:
        code = issue_pairing_code("2@xyz", renderer=fake_svg)
        self.assertEqual("<svg data-code='2@xyz'/>", code.svg)
        self.assertFalse(code.is_expired())

    def test_expiry(self) -> None:
        code = _code()
        self.assertIs(code, code.require_valid(NOW + timedelta(seconds=59)))
        with self.assertRaises(PairingExpired):
            code.require_valid(NOW + timedelta(seconds=60))

    def test_data_url_embeds_svg(self) -> None:
        url = _code().data_url
        self.assertTrue(url.startswith("data:image/svg+xml;base64,"))
        decoded = base64.b64decode(url.split(",", 1)[1]).decode("utf-8")
        self.assertEqual(fake_svg("2@pair"), decoded)


class TestSnapshot(unittest.TestCase):
    def test_open_session_is_connected(self) -> None:
        snapshot = snapshot_for(Session(generation=2, state=SessionState.OPEN), backend="gemini:x", now=NOW)
        self.assertEqual(PHASE_CONNECTED, snapshot.phase)
        self.assertIsNone(snapshot.pairing_image)
        self.assertEqual("gemini:x", snapshot.backend)

    def test_pending_code_is_awaiting_pairing(self) -> None:
        session = Session(generation=1, state=SessionState.AWAITING_PAIRING, pairing_code=_code())
        snapshot = snapshot_for(session, now=NOW + timedelta(seconds=5))
        self.assertEqual(PHASE_AWAITING_PAIRING, snapshot.phase)
        self.assertTrue(snapshot.pairing_image.startswith("data:image/svg+xml;base64,"))

    def test_expired_code_is_never_shown(self) -> None:
        session = Session(generation=1, state=SessionState.AWAITING_PAIRING, pairing_code=_code())
        snapshot = snapshot_for(session, now=NOW + timedelta(minutes=5))
        self.assertEqual(PHASE_INITIALIZING, snapshot.phase)
        self.assertIsNone(snapshot.pairing_image)

    def test_connecting_without_code_is_initializing(self) -> None:
        session = Session(generation=3, state=SessionState.CLOSED, last_close_reason=classify_close(428, "lost"))
        snapshot = snapshot_for(session, now=NOW)
        self.assertEqual(PHASE_INITIALIZING, snapshot.phase)
        self.assertEqual("428 (lost)", snapshot.last_close)

    def test_format_lines(self) -> None:
        self.assertEqual("status: initializing", format_status_lines(None)[0])
        snapshot = snapshot_for(Session(generation=2, state=SessionState.OPEN), now=NOW)
        lines = format_status_lines(snapshot)
        self.assertEqual("status: connected", lines[0])
        self.assertIn("completion backend: none", lines)


class TestStatusPresenter(unittest.TestCase):
    def test_presenter_tracks_pairing_image(self) -> None:
        with TemporaryDirectory() as tmp:
            root = Path(tmp)
            presenter = StatusPresenter(
                root / "state" / "status.json",
                root / "state" / "pairing.svg",
                backend_label=lambda: "gemini:gemini-2.0-flash",
                hooks=RuntimeHooks(emit_console=False),
                print_pairing=False,
            )

            fresh = issue_pairing_code("2@one", renderer=fake_svg)
            presenter(Session(generation=1, state=SessionState.AWAITING_PAIRING, pairing_code=fresh))
            self.assertEqual(fake_svg("2@one"), presenter.pairing_svg_path.read_text(encoding="utf-8"))
            stored = load_status(presenter.status_path)
            assert stored is not None
            self.assertEqual(PHASE_AWAITING_PAIRING, stored.phase)
            self.assertEqual("gemini:gemini-2.0-flash", stored.backend)

            presenter(Session(generation=1, state=SessionState.OPEN))
            self.assertFalse(presenter.pairing_svg_path.exists())
            stored = load_status(presenter.status_path)
            assert stored is not None
            self.assertEqual(PHASE_CONNECTED, stored.phase)
            self.assertIsNone(stored.pairing_image)

    def test_backend_selection_after_open_is_recorded(self) -> None:
        async def slow_canary(prompt: str) -> str:
            await asyncio.sleep(0.05)
            return "pong"

        with TemporaryDirectory() as tmp:
            paths = runtime_paths(Path(tmp))

            async def scenario() -> tuple[StatusSnapshot | None, StatusSnapshot | None]:
                bus = AuditBus()
                gateway = CompletionGateway(
                    [BackendCandidate("fake", "m")],
                    {"fake": FakeBackend({"m": slow_canary})},
                    hooks=QUIET,
                    bus=bus,
                )
                presenter = build_status_presenter(paths, gateway, hooks=QUIET, bus=bus)
                discovery = asyncio.create_task(gateway.discover())
                presenter(Session(generation=1, state=SessionState.OPEN))
                before = load_status(paths.status_json)
                await discovery
                return before, load_status(paths.status_json)

            before, after = asyncio.run(scenario())

        assert before is not None and after is not None
        self.assertIsNone(before.backend)
        self.assertEqual(PHASE_CONNECTED, after.phase)
        self.assertEqual("fake:m", after.backend)

    def test_expired_code_is_cleared_without_new_events(self) -> None:
        with TemporaryDirectory() as tmp:
            root = Path(tmp)
            presenter = StatusPresenter(
                root / "status.json",
                root / "pairing.svg",
                hooks=QUIET,
                print_pairing=False,
            )
            code = PairingCode(
                raw="2@short",
                svg=fake_svg("2@short"),
                issued_at=datetime.now(tz=timezone.utc),
                ttl_s=0.05,
            )

            async def scenario() -> None:
                presenter(Session(generation=1, state=SessionState.AWAITING_PAIRING, pairing_code=code))
                self.assertEqual(PHASE_AWAITING_PAIRING, presenter.latest.phase)
                with contextlib.suppress(asyncio.TimeoutError):
                    await asyncio.wait_for(presenter.watch_pairing_expiry(interval_s=0.01), timeout=0.2)

            asyncio.run(scenario())

            stored = load_status(presenter.status_path)
            assert stored is not None
            self.assertEqual(PHASE_INITIALIZING, stored.phase)
            self.assertIsNone(stored.pairing_image)
            self.assertFalse(presenter.pairing_svg_path.exists())

    def test_load_status_demotes_lapsed_code(self) -> None:
        with TemporaryDirectory() as tmp:
            path = Path(tmp) / "status.json"
            session = Session(generation=1, state=SessionState.AWAITING_PAIRING, pairing_code=_code())
            snapshot = snapshot_for(session, now=NOW)
            path.write_text(json.dumps(snapshot.to_json()), encoding="utf-8")

            fresh = load_status(path, now=NOW + timedelta(seconds=30))
            stale = load_status(path, now=NOW + timedelta(minutes=2))

        assert fresh is not None and stale is not None
        self.assertEqual(PHASE_AWAITING_PAIRING, fresh.phase)
        self.assertEqual(PHASE_INITIALIZING, stale.phase)
        self.assertIsNone(stale.pairing_image)
        self.assertEqual(["status: initializing"], format_status_lines(stale)[:1])

    def test_load_status_tolerates_garbage(self) -> None:
        with TemporaryDirectory() as tmp:
            path = Path(tmp) / "status.json"
            self.assertIsNone(load_status(path))
            path.write_text("[]", encoding="utf-8")
            self.assertIsNone(load_status(path))
            path.write_text("{oops", encoding="utf-8")
            self.assertIsNone(load_status(path))


if __name__ == "__main__":
    unittest.main()
