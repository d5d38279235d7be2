from __future__ import annotations

from dataclasses import dataclass
import enum


class RelayError(Exception):
    """Base class for every error relaybot raises on purpose."""


class ConfigError(RelayError):
    pass


class PairingExpired(RelayError):
    """The pending pairing code lapsed before it was scanned."""


TERMINAL_CLOSE_CODES = frozenset({401, 403, "logged_out", "banned"})


@dataclass(frozen=True)
class CloseReason:
    code: int | str | None
    detail: str = ""
    terminal: bool = False

    @property
    def label(self) -> str:
        code = "unknown" if self.code is None else str(self.code)
        return f"{code} ({self.detail})" if self.detail else code


def classify_close(code: object, detail: str = "") -> CloseReason:
    normalized = _normalize_close_code(code)
    return CloseReason(code=normalized, detail=detail, terminal=normalized in TERMINAL_CLOSE_CODES)


def _normalize_close_code(code: object) -> int | str | None:
    if code is None or isinstance(code, bool):
        return None
    if isinstance(code, int):
        return code
    if isinstance(code, float) and code.is_integer():
        return int(code)
    text = str(code).strip()
    if not text:
        return None
    if text.lstrip("-").isdigit():
        return int(text)
    return text.lower().replace("-", "_").replace(" ", "_")


class TransportClosed(RelayError):
    def __init__(self, reason: CloseReason) -> None:
        super().__init__(f"transport closed: {reason.label}")
        self.reason = reason

    @classmethod
    def for_reason(cls, reason: CloseReason) -> "TransportClosed":
        if reason.terminal:
            return TerminalClose(reason)
        return RecoverableClose(reason)


class RecoverableClose(TransportClosed):
    pass


class TerminalClose(TransportClosed):
    pass


class FailureKind(str, enum.Enum):
    NOT_FOUND = "not_found"
    FORBIDDEN = "forbidden"
    RATE_LIMITED = "rate_limited"
    TRANSIENT = "transient"
    TIMEOUT = "timeout"
    INVALID_REQUEST = "invalid_request"
    EMPTY_RESPONSE = "empty_response"
    UNKNOWN = "unknown"

    @property
    def skippable(self) -> bool:
        """Whether discovery should move on to the next candidate."""
        return self in (FailureKind.NOT_FOUND, FailureKind.FORBIDDEN)


def failure_kind_for_status(status: int | None) -> FailureKind:
    if status is None:
        return FailureKind.UNKNOWN
    if status == 404:
        return FailureKind.NOT_FOUND
    if status in (401, 403):
        return FailureKind.FORBIDDEN
    if status == 429:
        return FailureKind.RATE_LIMITED
    if status in (408, 504):
        return FailureKind.TIMEOUT
    if status >= 500:
        return FailureKind.TRANSIENT
    if 400 <= status < 500:
        return FailureKind.INVALID_REQUEST
    return FailureKind.UNKNOWN


class BackendError(RelayError):
    """A single backend call failed; `kind` says how."""

    def __init__(self, kind: FailureKind, detail: str = "", *, candidate: str = "") -> None:
        label = f"{candidate}: " if candidate else ""
        super().__init__(f"{label}{kind.value}{': ' + detail if detail else ''}")
        self.kind = kind
        self.detail = detail
        self.candidate = candidate


class BackendNotAvailable(BackendError):
    """Candidate rejected during discovery (not found, forbidden, unconfigured)."""


class CompletionFailed(BackendError):
    """The selected candidate failed while answering a request."""


class NoBackendAvailable(RelayError):
    def __init__(self, detail: str = "") -> None:
        super().__init__(f"no completion backend available{': ' + detail if detail else ''}")
        self.detail = detail
