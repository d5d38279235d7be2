from __future__ import annotations

from dataclasses import dataclass
from typing import Any


TRIGGER_PREFIX = "!gpt "

KIND_TEXT = "text"
KIND_EXTENDED_TEXT = "extended_text"
KIND_MEDIA = "media"
KIND_UNSUPPORTED = "unsupported"

_CAPTIONED_MEDIA_KEYS = ("imageMessage", "videoMessage", "documentMessage")


@dataclass(frozen=True)
class MessageContent:
    kind: str = KIND_UNSUPPORTED
    text: str | None = None
    extended_text: str | None = None
    caption: str | None = None


@dataclass(frozen=True)
class InboundMessage:
    id: str
    chat_id: str
    sender: str
    content: MessageContent
    from_me: bool = False


@dataclass(frozen=True)
class CompletionRequest:
    prompt: str
    chat_id: str
    sender: str
    message_id: str


def content_from_payload(payload: Any) -> MessageContent:
    """Map a bridge `message` object onto the content shapes we understand."""

    if not isinstance(payload, dict):
        return MessageContent()

    text = _str_or_none(payload.get("conversation"))
    extended = payload.get("extendedTextMessage")
    extended_text = _str_or_none(extended.get("text")) if isinstance(extended, dict) else None
    caption = None
    for key in _CAPTIONED_MEDIA_KEYS:
        media = payload.get(key)
        if isinstance(media, dict):
            value = _str_or_none(media.get("caption"))
            if value is not None and not caption:
                caption = value
            if caption:
                break

    if text is not None:
        kind = KIND_TEXT
    elif extended_text is not None:
        kind = KIND_EXTENDED_TEXT
    elif caption is not None:
        kind = KIND_MEDIA
    else:
        kind = KIND_UNSUPPORTED
    return MessageContent(kind=kind, text=text, extended_text=extended_text, caption=caption)


def extract_text(message: InboundMessage | MessageContent) -> str | None:
    # Precedence: plain text, then quoted/extended text, then media caption.
    content = message.content if isinstance(message, InboundMessage) else message
    for candidate in (content.text, content.extended_text, content.caption):
        if candidate:
            return candidate
    return None


def parse_trigger(text: str | None) -> str | None:
    if text is None or not text.startswith(TRIGGER_PREFIX):
        return None
    return text[len(TRIGGER_PREFIX):]


class MessageRouter:
    def __init__(self, *, allow_self_trigger: bool = False) -> None:
        self.allow_self_trigger = allow_self_trigger

    def route(self, message: InboundMessage) -> CompletionRequest | None:
        if message.from_me and not self.allow_self_trigger:
            return None
        prompt = parse_trigger(extract_text(message))
        if prompt is None:
            return None
        return CompletionRequest(
            prompt=prompt,
            chat_id=message.chat_id,
            sender=message.sender,
            message_id=message.id,
        )


def _str_or_none(value: Any) -> str | None:
    return value if isinstance(value, str) else None
