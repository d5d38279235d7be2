from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Iterable, Protocol

from .errors import (
    BackendError,
    BackendNotAvailable,
    CompletionFailed,
    FailureKind,
    NoBackendAvailable,
)
from .events import AuditBus
from .runtime_log import RuntimeHooks, emit_runtime_log, summarize_text


MODE_DISCOVER = "discover"
MODE_PER_REQUEST = "per_request"
DEFAULT_PROVIDER = "gemini"


@dataclass(frozen=True)
class BackendCandidate:
    provider: str
    model: str

    @property
    def label(self) -> str:
        return f"{self.provider}:{self.model}"

    @classmethod
    def parse(cls, spec: str) -> "BackendCandidate":
        value = (spec or "").strip()
        if not value:
            raise ValueError("empty backend candidate")
        provider, sep, model = value.partition(":")
        if not sep:
            return cls(provider=DEFAULT_PROVIDER, model=value)
        if not provider.strip() or not model.strip():
            raise ValueError(f"invalid backend candidate: {spec!r}")
        return cls(provider=provider.strip().lower(), model=model.strip())


class CompletionBackend(Protocol):
    name: str

    def configured(self) -> bool: ...

    async def generate(self, model: str, prompt: str) -> str: ...


class CompletionGateway:
    """Single `complete(prompt)` entry point over an ordered candidate list.

    In `discover` mode the first usable candidate is found once and pinned for
    the life of the process; request failures never trigger a new search. In
    `per_request` mode every request walks the list until one succeeds.
    """

    def __init__(
        self,
        candidates: Iterable[BackendCandidate],
        backends: dict[str, CompletionBackend],
        *,
        mode: str = MODE_DISCOVER,
        timeout_s: float = 60.0,
        canary_prompt: str = "ping",
        hooks: RuntimeHooks | None = None,
        bus: AuditBus | None = None,
    ) -> None:
        if mode not in (MODE_DISCOVER, MODE_PER_REQUEST):
            raise ValueError(f"unknown completion mode: {mode}")
        self.candidates = tuple(candidates)
        self.backends = dict(backends)
        self.mode = mode
        self.timeout_s = timeout_s
        self.canary_prompt = canary_prompt
        self._hooks = hooks
        self._bus = bus
        self._active: BackendCandidate | None = None
        self._discovered = False
        self._discovery_lock = asyncio.Lock()
        self._unavailable_detail = ""

    @property
    def active_candidate(self) -> BackendCandidate | None:
        return self._active

    def configured_candidates(self) -> list[BackendCandidate]:
        out: list[BackendCandidate] = []
        for candidate in self.candidates:
            backend = self.backends.get(candidate.provider)
            if backend is not None and backend.configured():
                out.append(candidate)
        return out

    async def discover(self) -> BackendCandidate | None:
        if self._discovered:
            return self._active
        async with self._discovery_lock:
            if self._discovered:
                return self._active
            rejected: list[str] = []
            for candidate in self.candidates:
                try:
                    await self._call(candidate, self.canary_prompt)
                except BackendError as exc:
                    if exc.kind.skippable:
                        rejected.append(f"{candidate.label}: {exc.kind.value}")
                        self._log(f"completion: candidate {candidate.label} unusable ({exc.kind.value})", level="warn")
                        continue
                    self._log(
                        f"completion: candidate {candidate.label} constrained ({exc.kind.value}); accepting it",
                        level="warn",
                    )
                self._active = candidate
                break
            self._discovered = True
            if self._active is None:
                self._unavailable_detail = "; ".join(rejected) or "no candidates configured"
                self._log(f"completion: no backend available ({self._unavailable_detail})", level="error")
                self._publish("completion.unavailable", self._unavailable_detail, severity="error")
            else:
                self._log(f"completion: active backend {self._active.label}")
                self._publish("completion.selected", self._active.label, candidate=self._active.label)
            return self._active

    async def complete(self, prompt: str) -> str:
        if self.mode == MODE_PER_REQUEST:
            return await self._complete_with_fallback(prompt)

        candidate = await self.discover()
        if candidate is None:
            raise NoBackendAvailable(self._unavailable_detail)
        try:
            return await self._call(candidate, prompt)
        except BackendError as exc:
            raise CompletionFailed(exc.kind, exc.detail, candidate=candidate.label) from exc

    async def _complete_with_fallback(self, prompt: str) -> str:
        candidates = self.configured_candidates()
        if not candidates:
            raise NoBackendAvailable("no configured candidates")
        failures: list[str] = []
        last_kind = FailureKind.UNKNOWN
        for candidate in candidates:
            try:
                text = await self._call(candidate, prompt)
            except BackendError as exc:
                last_kind = exc.kind
                failures.append(f"{candidate.label}: {exc.kind.value}")
                continue
            if candidate != self._active:
                self._active = candidate
                self._publish("completion.selected", candidate.label, candidate=candidate.label)
            return text
        raise CompletionFailed(last_kind, f"fallback exhausted: {'; '.join(failures)}")

    async def _call(self, candidate: BackendCandidate, prompt: str) -> str:
        backend = self.backends.get(candidate.provider)
        if backend is None:
            raise BackendNotAvailable(FailureKind.NOT_FOUND, "unknown provider", candidate=candidate.label)
        if not backend.configured():
            raise BackendNotAvailable(FailureKind.FORBIDDEN, "missing credentials", candidate=candidate.label)
        try:
            text = await asyncio.wait_for(backend.generate(candidate.model, prompt), timeout=self.timeout_s)
        except asyncio.TimeoutError as exc:
            raise BackendError(FailureKind.TIMEOUT, f"no reply within {self.timeout_s:.0f}s", candidate=candidate.label) from exc
        except BackendError:
            raise
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # noqa: BLE001
            raise BackendError(FailureKind.UNKNOWN, summarize_text(str(exc)), candidate=candidate.label) from exc
        if not text or not text.strip():
            raise BackendError(FailureKind.EMPTY_RESPONSE, "backend returned no text", candidate=candidate.label)
        return text

    def _log(self, message: str, *, level: str = "info") -> None:
        emit_runtime_log(message, level=level, hooks=self._hooks)

    def _publish(self, event_type: str, message: str, *, severity: str = "info", **metadata) -> None:
        if self._bus is not None:
            self._bus.publish(event_type, message, severity=severity, **metadata)


def parse_candidates(specs: Iterable[str]) -> list[BackendCandidate]:
    out: list[BackendCandidate] = []
    seen: set[BackendCandidate] = set()
    for spec in specs:
        candidate = BackendCandidate.parse(spec)
        if candidate in seen:
            continue
        seen.add(candidate)
        out.append(candidate)
    return out
