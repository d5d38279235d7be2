from __future__ import annotations

from dataclasses import dataclass, field, replace
import os
from pathlib import Path
import shlex
import tomllib


COMPLETION_MODES = ("discover", "per_request")
DEFAULT_CANDIDATES = (
    "gemini:gemini-2.0-flash",
    "gemini:gemini-1.5-flash",
    "gemini:gemini-pro",
)
API_KEY_ENV_VARS = ("GEMINI_API_KEY", "GOOGLE_API_KEY")


def _as_float(value, *, default: float) -> float:
    try:
        return float(value)
    except Exception:  # noqa: BLE001
        return float(default)


def _as_int(value, *, default: int) -> int:
    try:
        return int(value)
    except Exception:  # noqa: BLE001
        return int(default)


def _as_bool(value, *, default: bool) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in {"1", "true", "yes", "y", "on"}:
            return True
        if lowered in {"0", "false", "no", "n", "off"}:
            return False
    return bool(default)


def _as_str_list(value) -> list[str]:
    if isinstance(value, list):
        out: list[str] = []
        for item in value:
            if isinstance(item, str) and item.strip():
                out.append(item.strip())
        return out
    if isinstance(value, str) and value.strip():
        return [value.strip()]
    return []


def _as_command(value) -> list[str]:
    if isinstance(value, str):
        return shlex.split(value)
    return _as_str_list(value)


@dataclass(frozen=True)
class SessionConfig:
    reconnect_base_s: float = 3.0
    reconnect_max_s: float = 60.0
    max_reconnect_attempts: int = 0  # 0 = retry forever


@dataclass(frozen=True)
class RouterConfig:
    allow_self_trigger: bool = False


@dataclass(frozen=True)
class CompletionConfig:
    mode: str = "discover"
    candidates: list[str] = field(default_factory=lambda: list(DEFAULT_CANDIDATES))
    timeout_s: float = 60.0
    canary_prompt: str = "ping"


@dataclass(frozen=True)
class BridgeConfig:
    command: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class RelayConfig:
    session: SessionConfig = field(default_factory=SessionConfig)
    router: RouterConfig = field(default_factory=RouterConfig)
    completion: CompletionConfig = field(default_factory=CompletionConfig)
    bridge: BridgeConfig = field(default_factory=BridgeConfig)


def load_config(path: Path) -> tuple[RelayConfig, str]:
    """Load relaybot.toml.

    Returns (config, warning). Warning is empty on success; on any parse
    problem the defaults are returned alongside the reason.
    """

    if not path.exists():
        return RelayConfig(), ""

    try:
        data = tomllib.loads(path.read_text(encoding="utf-8"))
    except Exception as exc:  # noqa: BLE001
        return RelayConfig(), f"relaybot.toml parse failed: {exc}"

    session = data.get("session") if isinstance(data.get("session"), dict) else {}
    router = data.get("router") if isinstance(data.get("router"), dict) else {}
    completion = data.get("completion") if isinstance(data.get("completion"), dict) else {}
    bridge = data.get("bridge") if isinstance(data.get("bridge"), dict) else {}

    warnings: list[str] = []
    mode = str(completion.get("mode") or CompletionConfig.mode).strip().lower()
    if mode not in COMPLETION_MODES:
        warnings.append(f"completion.mode `{mode}` is not one of {', '.join(COMPLETION_MODES)}; using discover")
        mode = CompletionConfig.mode
    candidates = _as_str_list(completion.get("candidates")) or list(DEFAULT_CANDIDATES)

    base_s = max(0.0, _as_float(session.get("reconnect_base_s"), default=SessionConfig.reconnect_base_s))
    cfg = RelayConfig(
        session=SessionConfig(
            reconnect_base_s=base_s,
            reconnect_max_s=max(base_s, _as_float(session.get("reconnect_max_s"), default=SessionConfig.reconnect_max_s)),
            max_reconnect_attempts=max(
                0,
                _as_int(session.get("max_reconnect_attempts"), default=SessionConfig.max_reconnect_attempts),
            ),
        ),
        router=RouterConfig(
            allow_self_trigger=_as_bool(router.get("allow_self_trigger"), default=RouterConfig.allow_self_trigger),
        ),
        completion=CompletionConfig(
            mode=mode,
            candidates=candidates,
            timeout_s=max(1.0, _as_float(completion.get("timeout_s"), default=CompletionConfig.timeout_s)),
            canary_prompt=str(completion.get("canary_prompt") or CompletionConfig.canary_prompt),
        ),
        bridge=BridgeConfig(command=_as_command(bridge.get("command"))),
    )
    return cfg, "; ".join(warnings)


def apply_env_overrides(config: RelayConfig, env: dict[str, str] | None = None) -> RelayConfig:
    env = dict(os.environ) if env is None else env

    router = config.router
    raw_self_trigger = env.get("RELAYBOT_ALLOW_SELF_TRIGGER", "").strip()
    if raw_self_trigger:
        router = replace(router, allow_self_trigger=_as_bool(raw_self_trigger, default=router.allow_self_trigger))

    bridge = config.bridge
    raw_command = env.get("RELAYBOT_BRIDGE_COMMAND", "").strip()
    if raw_command:
        bridge = replace(bridge, command=shlex.split(raw_command))

    completion = config.completion
    raw_mode = env.get("RELAYBOT_COMPLETION_MODE", "").strip().lower()
    if raw_mode in COMPLETION_MODES:
        completion = replace(completion, mode=raw_mode)

    return replace(config, router=router, bridge=bridge, completion=completion)


def gemini_api_key(env: dict[str, str] | None = None) -> str:
    env = dict(os.environ) if env is None else env
    for name in API_KEY_ENV_VARS:
        value = env.get(name, "").strip()
        if value:
            return value
    return ""


def explain_config(config: RelayConfig, *, path: Path | None = None) -> str:
    location = str(path) if path is not None else "relaybot.toml"
    attempts = config.session.max_reconnect_attempts
    command = " ".join(shlex.quote(part) for part in config.bridge.command) if config.bridge.command else "(unset)"
    lines = [
        f"relaybot.toml guide ({location})",
        "",
        "[session]",
        f"- reconnect_base_s: first reconnect delay, doubled per failed attempt (current: {config.session.reconnect_base_s})",
        f"- reconnect_max_s: upper bound for the reconnect delay (current: {config.session.reconnect_max_s})",
        f"- max_reconnect_attempts: stop after this many consecutive failures, 0 = never (current: {attempts})",
        "",
        "[router]",
        "- allow_self_trigger: answer `!gpt` messages sent from the paired account itself "
        f"(current: {'true' if config.router.allow_self_trigger else 'false'})",
        "",
        "[completion]",
        f"- mode: `discover` checks once and pins a backend, `per_request` falls back on every request (current: {config.completion.mode})",
        f"- candidates: ordered `provider:model` list (current: {', '.join(config.completion.candidates)})",
        f"- timeout_s: per-request timeout (current: {config.completion.timeout_s})",
        f"- canary_prompt: prompt used to test candidates (current: {config.completion.canary_prompt!r})",
        "",
        "[bridge]",
        f"- command: bridge process speaking the chat protocol over stdio JSON lines (current: {command})",
        "",
        "environment:",
        "- GEMINI_API_KEY / GOOGLE_API_KEY: secret for `gemini:` candidates",
        "- RELAYBOT_ALLOW_SELF_TRIGGER, RELAYBOT_BRIDGE_COMMAND, RELAYBOT_COMPLETION_MODE: overrides",
    ]
    return "\n".join(lines)
