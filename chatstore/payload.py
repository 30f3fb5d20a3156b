"""
Helpers that read text, media descriptors and the disappearing-message timer
out of a message payload.

Payloads are the protobuf JSON mapping of a WhatsApp message (camelCase keys,
bytes as base64 strings). Raw bytes are accepted too.
"""

import base64
import binascii
import logging
from typing import Any, Mapping, NamedTuple, Optional

logger = logging.getLogger(__name__)

# Wrappers whose inner "message" holds the real content
_WRAPPER_KEYS = (
    "ephemeralMessage",
    "viewOnceMessage",
    "viewOnceMessageV2",
    "viewOnceMessageV2Extension",
    "documentWithCaptionMessage",
    "editedMessage",
)

# Payload key -> stored media type
MEDIA_TYPES = {
    "imageMessage": "image",
    "videoMessage": "video",
    "audioMessage": "audio",
    "documentMessage": "document",
    "stickerMessage": "sticker",
}


class MediaInfo(NamedTuple):
    media_type: str = ""
    filename: str = ""
    url: str = ""
    media_key: Optional[bytes] = None
    file_sha256: Optional[bytes] = None
    file_enc_sha256: Optional[bytes] = None
    file_length: int = 0


def unwrap_message(message: Optional[Mapping[str, Any]]) -> Mapping[str, Any]:
    """Strip ephemeral / view-once style wrappers."""
    current = message or {}
    while True:
        for key in _WRAPPER_KEYS:
            inner = current.get(key)
            if isinstance(inner, Mapping) and isinstance(inner.get("message"), Mapping):
                current = inner["message"]
                break
        else:
            return current


def _decode_bytes(value: Any) -> Optional[bytes]:
    if value is None or value == "":
        return None
    if isinstance(value, (bytes, bytearray, memoryview)):
        return bytes(value)
    try:
        return base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError, TypeError):
        logger.warning("Ignoring undecodable media byte field")
        return None


def _parse_count(value: Any, field: str) -> int:
    """Non-negative integer field; malformed values count as 0."""
    if value is None or value == "":
        return 0
    try:
        count = int(value)
    except (TypeError, ValueError):
        logger.warning(f"Ignoring non-numeric {field}: {value!r}")
        return 0
    if count < 0:
        logger.warning(f"Ignoring negative {field}: {count}")
        return 0
    return count


def extract_message_text(message: Optional[Mapping[str, Any]]) -> str:
    """Return the user-visible text of a message, or "" if there is none."""
    msg = unwrap_message(message)
    if msg.get("conversation"):
        return msg["conversation"]

    extended = msg.get("extendedTextMessage")
    if isinstance(extended, Mapping) and extended.get("text"):
        return extended["text"]

    for key in ("imageMessage", "videoMessage", "documentMessage"):
        media = msg.get(key)
        if isinstance(media, Mapping) and media.get("caption"):
            return media["caption"]

    return ""


def extract_media_info(message: Optional[Mapping[str, Any]]) -> MediaInfo:
    """Return the media descriptor of a message; empty MediaInfo if none."""
    msg = unwrap_message(message)
    for key, media_type in MEDIA_TYPES.items():
        media = msg.get(key)
        if not isinstance(media, Mapping):
            continue
        return MediaInfo(
            media_type=media_type,
            filename=media.get("fileName") or "",
            url=media.get("url") or "",
            media_key=_decode_bytes(media.get("mediaKey")),
            file_sha256=_decode_bytes(media.get("fileSha256")),
            file_enc_sha256=_decode_bytes(media.get("fileEncSha256")),
            file_length=_parse_count(media.get("fileLength"), "fileLength"),
        )
    return MediaInfo()


def extract_ephemeral_expiration(message: Optional[Mapping[str, Any]]) -> int:
    """
    Return the disappearing-message timer (seconds) carried by a message,
    or 0 when the message does not set one.
    """
    msg = unwrap_message(message)

    protocol = msg.get("protocolMessage")
    if isinstance(protocol, Mapping) and protocol.get("ephemeralExpiration"):
        return _parse_count(protocol["ephemeralExpiration"], "ephemeralExpiration")

    for value in msg.values():
        if not isinstance(value, Mapping):
            continue
        context = value.get("contextInfo")
        if isinstance(context, Mapping) and context.get("expiration"):
            return _parse_count(context["expiration"], "expiration")
    return 0
