from __future__ import annotations

import base64
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
import io
from typing import Callable

import qrcode
import qrcode.image.svg

from .errors import PairingExpired


# The bridge library rotates codes on its own; this only bounds how long a
# stale code stays on display if a rotation event is missed.
PAIRING_CODE_TTL_S = 60.0

PairingRenderer = Callable[[str], str]


def _utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


@dataclass(frozen=True)
class PairingCode:
    raw: str
    svg: str
    issued_at: datetime
    ttl_s: float = PAIRING_CODE_TTL_S

    @property
    def expires_at(self) -> datetime:
        return self.issued_at + timedelta(seconds=self.ttl_s)

    def is_expired(self, now: datetime | None = None) -> bool:
        now = now or _utcnow()
        return now >= self.expires_at

    def require_valid(self, now: datetime | None = None) -> "PairingCode":
        if self.is_expired(now):
            raise PairingExpired(f"pairing code issued at {self.issued_at.isoformat()} has expired")
        return self

    @property
    def data_url(self) -> str:
        encoded = base64.b64encode(self.svg.encode("utf-8")).decode("ascii")
        return f"data:image/svg+xml;base64,{encoded}"


def render_pairing_svg(raw: str) -> str:
    image = qrcode.make(raw, image_factory=qrcode.image.svg.SvgPathImage)
    buffer = io.BytesIO()
    image.save(buffer)
    return buffer.getvalue().decode("utf-8")


def render_pairing_ascii(raw: str) -> str:
    qr = qrcode.QRCode(border=1)
    qr.add_data(raw)
    qr.make(fit=True)
    out = io.StringIO()
    qr.print_ascii(out=out, invert=True)
    return out.getvalue()


def issue_pairing_code(raw: str, *, renderer: PairingRenderer = render_pairing_svg) -> PairingCode:
    return PairingCode(raw=raw, svg=renderer(raw), issued_at=_utcnow())
