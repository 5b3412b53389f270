"""
Message translation between browser clients and the ConvAI realtime endpoint.

Upstream frames carry audio under several nested layouts; they are normalized
into a single client shape. Client frames are repackaged into the shapes the
provider expects. Frames that do not parse are passed through untouched.
"""

import json
from typing import Any, Dict, Optional, Tuple, Union

from convai_relay.config.constants import (
    DEFAULT_AUDIO_MIME,
    MESSAGE_TYPE_AUDIO,
    MESSAGE_TYPE_PING,
    MESSAGE_TYPE_PONG,
    MESSAGE_TYPE_USER_MESSAGE,
)
from convai_relay.errors import MessageFormatError

Frame = Union[str, bytes]

# Containers that may hold an audio payload, checked in order
AUDIO_CONTAINERS = (None, "audio_event", "data")


def parse_frame(frame: Frame) -> Dict[str, Any]:
    """
    Parse a text frame holding a JSON object.

    Raises:
        MessageFormatError: For binary frames, invalid JSON or non-object JSON
    """
    if isinstance(frame, bytes):
        raise MessageFormatError("binary frame")
    try:
        data = json.loads(frame)
    except ValueError as e:
        raise MessageFormatError(f"invalid JSON: {e}") from e
    if not isinstance(data, dict):
        raise MessageFormatError("JSON frame is not an object")
    return data


def extract_audio(message: Dict[str, Any]) -> Optional[Tuple[str, str]]:
    """
    Find an audio payload in an upstream message.

    Looks at `audio_base_64`, `audio_event.audio_base_64` and
    `data.audio_base_64` in that order. The mime type is resolved the same way
    and independently, so it may sit in a different container than the audio.

    Returns:
        (audio_base_64, mime) or None when no audio is present
    """
    containers = []
    for key in AUDIO_CONTAINERS:
        container = message if key is None else message.get(key)
        if isinstance(container, dict):
            containers.append(container)

    audio = next((c["audio_base_64"] for c in containers if c.get("audio_base_64")), None)
    if not audio:
        return None
    mime = next((c["mime"] for c in containers if c.get("mime")), DEFAULT_AUDIO_MIME)
    return audio, mime


def normalize_audio(audio_base_64: str, mime: str) -> Dict[str, Any]:
    return {"type": MESSAGE_TYPE_AUDIO, "audio_base_64": audio_base_64, "mime": mime}


def is_pong(message: Dict[str, Any]) -> bool:
    return message.get("type") == MESSAGE_TYPE_PONG


def is_ping(message: Dict[str, Any]) -> bool:
    return message.get("type") == MESSAGE_TYPE_PING


def make_pong(ping: Dict[str, Any]) -> Dict[str, Any]:
    pong: Dict[str, Any] = {"type": MESSAGE_TYPE_PONG}
    if "event_id" in ping:
        pong["event_id"] = ping["event_id"]
    return pong


def translate_client_message(message: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """
    Repackage a client JSON message into the provider's shape.

    Returns:
        The provider message, or None when the message should be forwarded as is
    """
    chunk = message.get("user_audio_chunk")
    if chunk:
        if isinstance(chunk, dict):
            chunk = chunk.get("audio_base_64") or ""
        return {"user_audio_chunk": chunk}
    if message.get("type") == MESSAGE_TYPE_USER_MESSAGE and message.get("text"):
        return {"type": MESSAGE_TYPE_USER_MESSAGE, "text": message["text"]}
    return None
