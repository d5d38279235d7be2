from __future__ import annotations

import argparse
import asyncio
import contextlib
import shutil
import signal
import sys

from . import __version__
from .backends import GeminiCliBackend, build_backends
from .completion import MODE_DISCOVER, CompletionGateway, parse_candidates
from .config import RelayConfig, apply_env_overrides, explain_config, gemini_api_key, load_config
from .credentials import CredentialStore
from .errors import ConfigError
from .events import AuditBus
from .locks import instance_lock
from .paths import RuntimePaths, config_path, ensure_runtime_dirs, runtime_paths
from .router import TRIGGER_PREFIX, MessageRouter
from .runtime_log import RuntimeHooks, emit_runtime_log, hooks_with_log_file, summarize_error
from .session import SessionManager, SessionSettings
from .status import StatusPresenter, format_status_lines, load_status
from .transport import BridgeTransport


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="relaybot",
        description="relaybot: answers `!gpt` chat messages with a text-completion backend",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")

    sub = parser.add_subparsers(dest="cmd", required=False)

    run = sub.add_parser("run", help="Connect, pair if needed, and answer messages until stopped.")
    run.add_argument("--debug", action="store_true", help="Log untriggered messages and bridge chatter.")

    sub.add_parser("status", help="Show the state recorded by the running instance.")
    sub.add_parser("config", help="Explain relaybot.toml options and current values.")
    sub.add_parser("doctor", help="Check bridge, secrets, and backend configuration.")
    sub.add_parser("logout", help="Wipe stored credentials so the next run pairs again.")

    return parser


def _load_effective_config(hooks: RuntimeHooks | None = None) -> RelayConfig:
    path = config_path()
    cfg, warning = load_config(path)
    if warning:
        emit_runtime_log(warning, level="warn", hooks=hooks)
    return apply_env_overrides(cfg)


def cmd_run(args: argparse.Namespace) -> int:
    paths = ensure_runtime_dirs(runtime_paths())
    hooks = hooks_with_log_file(RuntimeHooks(debug=bool(getattr(args, "debug", False))), paths.runtime_log)
    cfg = _load_effective_config(hooks)

    emit_runtime_log(f"relaybot {__version__}: starting (runtime dir: {paths.root})", hooks=hooks)
    try:
        with instance_lock(paths.instance_lock):
            return asyncio.run(_run_relay(cfg, paths, hooks=hooks))
    except KeyboardInterrupt:
        return 130
    except Exception as exc:  # noqa: BLE001
        emit_runtime_log(summarize_error(exc), level="error", hooks=hooks)
        return 2


def build_gateway(cfg: RelayConfig, *, api_key: str, hooks: RuntimeHooks | None = None, bus: AuditBus | None = None) -> CompletionGateway:
    try:
        candidates = parse_candidates(cfg.completion.candidates)
    except ValueError as exc:
        raise ConfigError(f"completion.candidates: {exc}") from exc
    return CompletionGateway(
        candidates,
        build_backends(api_key),
        mode=cfg.completion.mode,
        timeout_s=cfg.completion.timeout_s,
        canary_prompt=cfg.completion.canary_prompt,
        hooks=hooks,
        bus=bus,
    )


def build_status_presenter(
    paths: RuntimePaths,
    gateway: CompletionGateway,
    *,
    hooks: RuntimeHooks | None = None,
    bus: AuditBus | None = None,
) -> StatusPresenter:
    presenter = StatusPresenter(
        paths.status_json,
        paths.pairing_svg,
        backend_label=lambda: gateway.active_candidate.label if gateway.active_candidate else None,
        hooks=hooks,
    )
    if bus is not None:
        bus.subscribe(presenter.on_audit_event)
    return presenter


def build_session_manager(
    cfg: RelayConfig,
    paths: RuntimePaths,
    gateway: CompletionGateway,
    *,
    hooks: RuntimeHooks | None = None,
    bus: AuditBus | None = None,
) -> SessionManager:
    command = list(cfg.bridge.command)
    return SessionManager(
        transport_factory=lambda: BridgeTransport(command, hooks=hooks),
        store=CredentialStore(paths.auth_dir),
        router=MessageRouter(allow_self_trigger=cfg.router.allow_self_trigger),
        gateway=gateway,
        settings=SessionSettings(
            reconnect_base_s=cfg.session.reconnect_base_s,
            reconnect_max_s=cfg.session.reconnect_max_s,
            max_reconnect_attempts=cfg.session.max_reconnect_attempts,
        ),
        hooks=hooks,
        bus=bus,
    )


async def _run_relay(cfg: RelayConfig, paths: RuntimePaths, *, hooks: RuntimeHooks | None = None) -> int:
    bus = AuditBus(paths.events_jsonl)
    api_key = gemini_api_key()
    if not api_key:
        emit_runtime_log(
            "completion: GEMINI_API_KEY is not set; `gemini:` candidates are unavailable",
            level="warn",
            hooks=hooks,
        )
    try:
        gateway = build_gateway(cfg, api_key=api_key, hooks=hooks, bus=bus)
    except ConfigError as exc:
        emit_runtime_log(str(exc), level="error", hooks=hooks)
        return 2
    manager = build_session_manager(cfg, paths, gateway, hooks=hooks, bus=bus)
    presenter = build_status_presenter(paths, gateway, hooks=hooks, bus=bus)
    manager.add_observer(presenter)

    emit_runtime_log(
        f"router: trigger `{TRIGGER_PREFIX.strip()}`, self-trigger {'on' if cfg.router.allow_self_trigger else 'off'}",
        hooks=hooks,
    )
    emit_runtime_log(f"completion: mode={cfg.completion.mode} candidates={len(gateway.candidates)}", hooks=hooks)

    loop = asyncio.get_running_loop()
    for signum in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError, RuntimeError):
            loop.add_signal_handler(signum, manager.stop)

    background: list[asyncio.Task] = [asyncio.create_task(presenter.watch_pairing_expiry())]
    if cfg.completion.mode == MODE_DISCOVER:
        background.append(asyncio.create_task(gateway.discover()))

    try:
        await manager.run()
    finally:
        for task in background:
            if not task.done():
                task.cancel()
            with contextlib.suppress(asyncio.CancelledError, Exception):
                await task

    emit_runtime_log("relaybot: stopped", hooks=hooks)
    return 1 if manager.reconnects_exhausted else 0


def cmd_status(args: argparse.Namespace) -> int:
    paths = runtime_paths()
    print("\n".join(format_status_lines(load_status(paths.status_json))))
    return 0


def cmd_config(args: argparse.Namespace) -> int:
    path = config_path()
    cfg, warning = load_config(path)
    report = explain_config(apply_env_overrides(cfg), path=path)
    if warning:
        report = f"{report}\n\nwarning: {warning}"
    print(report)
    return 0


def cmd_doctor(args: argparse.Namespace) -> int:
    paths = runtime_paths()
    cfg = _load_effective_config()
    lines, problems = _doctor_report(cfg, paths)
    print("\n".join(lines))
    if problems:
        print("\nProblems:\n" + "\n".join(f"- {problem}" for problem in problems))
        return 1
    return 0


def _doctor_report(cfg: RelayConfig, paths: RuntimePaths, *, api_key: str | None = None) -> tuple[list[str], list[str]]:
    lines: list[str] = [f"relaybot {__version__}", f"runtime dir: {paths.root}"]
    problems: list[str] = []

    command = cfg.bridge.command
    if not command:
        problems.append("bridge command is not configured ([bridge].command or RELAYBOT_BRIDGE_COMMAND)")
        lines.append("bridge: unset")
    else:
        found = shutil.which(command[0])
        lines.append(f"bridge: {' '.join(command)} ({'found' if found else 'not found'})")
        if not found:
            problems.append(f"bridge executable `{command[0]}` not found on PATH")

    store = CredentialStore(paths.auth_dir)
    lines.append(f"credentials: {'present' if store.exists() else 'absent (next run will pair)'}")

    key = gemini_api_key() if api_key is None else api_key
    lines.append(f"gemini api key: {'present' if key else 'missing'}")
    try:
        candidates = parse_candidates(cfg.completion.candidates)
    except ValueError as exc:
        problems.append(f"completion.candidates: {exc}")
        candidates = []
    usable = 0
    for candidate in candidates:
        if candidate.provider == "gemini":
            ok = bool(key)
        elif candidate.provider == GeminiCliBackend.name:
            ok = GeminiCliBackend().installed()
        else:
            ok = False
        usable += 1 if ok else 0
        lines.append(f"candidate {candidate.label}: {'configured' if ok else 'unavailable'}")
    if candidates and not usable:
        problems.append("no completion candidate is configured; every `!gpt` reply will be the unavailable notice")
    lines.append(f"completion mode: {cfg.completion.mode}")
    lines.append(f"self-trigger: {'on' if cfg.router.allow_self_trigger else 'off'}")
    return lines, problems


def cmd_logout(args: argparse.Namespace) -> int:
    paths = ensure_runtime_dirs(runtime_paths())
    try:
        with instance_lock(paths.instance_lock):
            removed = CredentialStore(paths.auth_dir).wipe()
    except RuntimeError as exc:
        print(f"{exc}; stop it before logging out", file=sys.stderr)
        return 2
    print("credentials wiped; the next run will show a new pairing code" if removed else "no stored credentials")
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    argv = list(argv) if argv is not None else list(sys.argv[1:])
    if not argv:
        argv = ["run"]
    args = parser.parse_args(argv)

    if args.cmd == "run":
        return cmd_run(args)
    if args.cmd == "status":
        return cmd_status(args)
    if args.cmd == "config":
        return cmd_config(args)
    if args.cmd == "doctor":
        return cmd_doctor(args)
    if args.cmd == "logout":
        return cmd_logout(args)

    parser.error(f"Unknown command: {args.cmd}")
    return 2


if __name__ == "__main__":
    raise SystemExit(main())
