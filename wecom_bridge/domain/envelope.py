from __future__ import annotations

import xml.etree.ElementTree as ET
from dataclasses import dataclass
from typing import Union

from wecom_bridge.domain.errors import DecodeError


@dataclass(frozen=True, kw_only=True)
class InboundMessageBase:
    to: str
    sender: str
    created_at: int
    agent_id: int
    msg_id: str | None = None


@dataclass(frozen=True, kw_only=True)
class TextMessage(InboundMessageBase):
    kind = "text"
    content: str = ""


@dataclass(frozen=True, kw_only=True)
class ImageMessage(InboundMessageBase):
    kind = "image"
    pic_url: str = ""
    media_id: str = ""


@dataclass(frozen=True, kw_only=True)
class VoiceMessage(InboundMessageBase):
    kind = "voice"
    media_id: str = ""
    format: str = ""


@dataclass(frozen=True, kw_only=True)
class VideoMessage(InboundMessageBase):
    kind = "video"
    media_id: str = ""
    thumb_media_id: str = ""


@dataclass(frozen=True, kw_only=True)
class LocationMessage(InboundMessageBase):
    kind = "location"
    x: float = 0.0
    y: float = 0.0
    scale: float = 0.0
    label: str = ""
    app_type: str | None = None


@dataclass(frozen=True, kw_only=True)
class LinkMessage(InboundMessageBase):
    kind = "link"
    title: str = ""
    description: str = ""
    url: str = ""
    pic_url: str = ""


@dataclass(frozen=True, kw_only=True)
class EventMessage(InboundMessageBase):
    kind = "event"
    name: str = ""


InboundMessage = Union[
    TextMessage,
    ImageMessage,
    VoiceMessage,
    VideoMessage,
    LocationMessage,
    LinkMessage,
    EventMessage,
]


def _parse_root(xml_text: str) -> ET.Element:
    try:
        root = ET.fromstring(xml_text)
    except ET.ParseError as exc:
        raise DecodeError(f"Invalid message XML: {exc}") from exc
    if root.tag != "xml":
        raise DecodeError("Invalid message XML: missing <xml> root")
    return root


def _text(root: ET.Element, tag: str) -> str:
    node = root.find(tag)
    if node is None or node.text is None:
        return ""
    return node.text.strip()


def _number(raw: str) -> float:
    # Lenient upstream coercion: anything unparsable counts as zero.
    try:
        value = float(raw)
    except (TypeError, ValueError):
        return 0
    if value != value or value in (float("inf"), float("-inf")):
        return 0
    return value


def _integer(raw: str) -> int:
    return int(_number(raw))


def extract_encrypted_field(xml_text: str) -> str:
    root = _parse_root(xml_text)
    encrypted = _text(root, "Encrypt") or _text(root, "encrypt")
    if not encrypted:
        raise DecodeError("Missing Encrypt field in XML")
    return encrypted


def decode_message(xml_text: str) -> InboundMessage:
    root = _parse_root(xml_text)

    to = _text(root, "ToUserName")
    sender = _text(root, "FromUserName")
    kind = _text(root, "MsgType")
    if not to or not sender or not kind:
        raise DecodeError("Invalid message: missing required fields")

    common = {
        "to": to,
        "sender": sender,
        "created_at": _integer(_text(root, "CreateTime")),
        "agent_id": _integer(_text(root, "AgentID")),
        "msg_id": _text(root, "MsgId") or None,
    }

    if kind == "text":
        return TextMessage(**common, content=_text(root, "Content"))
    if kind == "image":
        return ImageMessage(
            **common,
            pic_url=_text(root, "PicUrl"),
            media_id=_text(root, "MediaId"),
        )
    if kind == "voice":
        return VoiceMessage(
            **common,
            media_id=_text(root, "MediaId"),
            format=_text(root, "Format"),
        )
    if kind == "video":
        return VideoMessage(
            **common,
            media_id=_text(root, "MediaId"),
            thumb_media_id=_text(root, "ThumbMediaId"),
        )
    if kind == "location":
        return LocationMessage(
            **common,
            x=_number(_text(root, "Location_X")),
            y=_number(_text(root, "Location_Y")),
            scale=_number(_text(root, "Scale")),
            label=_text(root, "Label"),
            app_type=_text(root, "AppType") or None,
        )
    if kind == "link":
        return LinkMessage(
            **common,
            title=_text(root, "Title"),
            description=_text(root, "Description"),
            url=_text(root, "Url"),
            pic_url=_text(root, "PicUrl"),
        )
    if kind == "event":
        return EventMessage(**common, name=_text(root, "Event"))
    raise DecodeError(f"Unsupported message type: {kind}")


def _display_number(value: float) -> str:
    if float(value).is_integer():
        return str(int(value))
    return str(value)


def format_for_backend(message: InboundMessage) -> tuple[str, list[str]]:
    """Render an inbound message as backend-facing text plus media URLs."""
    media_urls: list[str] = []

    if isinstance(message, TextMessage):
        text = message.content
    elif isinstance(message, ImageMessage):
        text = "[Image message]"
        if message.pic_url:
            media_urls.append(message.pic_url)
    elif isinstance(message, VoiceMessage):
        text = f"[Voice message]\nFormat: {message.format}\nMediaId: {message.media_id}"
    elif isinstance(message, VideoMessage):
        text = f"[Video message]\nMediaId: {message.media_id}"
    elif isinstance(message, LocationMessage):
        text = (
            f"[Location message]\nLocation: {message.label}\n"
            f"Coordinates: {_display_number(message.x)}, {_display_number(message.y)}\n"
            f"Scale: {_display_number(message.scale)}"
        )
    elif isinstance(message, LinkMessage):
        text = (
            f"[Link message]\nTitle: {message.title}\n"
            f"Description: {message.description}\nUrl: {message.url}"
        )
        if message.pic_url:
            media_urls.append(message.pic_url)
    else:
        text = "[Unsupported message]"

    return text, media_urls
