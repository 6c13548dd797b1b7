from __future__ import annotations

import os
import re
from pathlib import Path
from urllib.parse import unquote, urlparse

import httpx

from wecom_bridge.domain.errors import MediaError, TransportError


IMAGE_EXTENSIONS = {".jpg", ".jpeg", ".png", ".gif", ".bmp", ".webp"}
VOICE_EXTENSIONS = {".mp3", ".wav", ".amr", ".ogg", ".m4a"}
VIDEO_EXTENSIONS = {".mp4", ".avi", ".mov", ".wmv", ".flv", ".mkv"}

_MARKDOWN_MEDIA_RE = re.compile(
    r"!\[.*?\]\(([/~][^\s)]+\.(?:png|jpg|jpeg|gif|webp|bmp|mp4|avi|mov|mp3|wav|amr))\)",
    re.IGNORECASE,
)
_FILE_PATH_RE = re.compile(
    r"[`'\"]?([/~][^\s`'\"<>]+\.(?:png|jpg|jpeg|gif|webp|bmp|mp4|avi|mov|mp3|wav|amr|pdf|zip|tar|gz))[`'\"]?",
    re.IGNORECASE,
)


def detect_media_type(media_url: str) -> tuple[str, str]:
    """Return ``(kind, filename)`` where kind is image, voice, video or file."""
    path = urlparse(media_url).path if "://" in media_url else media_url
    ext = os.path.splitext(path)[1].lower()
    filename = path.rstrip("/").split("/")[-1] or f"file{ext}"

    if ext in IMAGE_EXTENSIONS:
        return "image", filename
    if ext in VOICE_EXTENSIONS:
        return "voice", filename
    if ext in VIDEO_EXTENSIONS:
        return "video", filename
    return "file", filename


def find_markdown_media(text: str | None) -> str | None:
    if not text:
        return None
    match = _MARKDOWN_MEDIA_RE.search(text)
    return match.group(1) if match else None


def find_media_reference(text: str | None) -> str | None:
    """Markdown image first, then any bare absolute or ~ path with a known extension."""
    if not text:
        return None
    markdown = find_markdown_media(text)
    if markdown:
        return markdown
    match = _FILE_PATH_RE.search(text)
    return match.group(1) if match else None


def _local_path(media_url: str) -> Path | None:
    if media_url.startswith("file://"):
        return Path(unquote(urlparse(media_url).path))
    if media_url.startswith("~"):
        return Path(media_url).expanduser()
    if media_url.startswith("/") or re.match(r"^[A-Za-z]:", media_url):
        return Path(media_url)
    return None


def fetch_media(media_url: str, timeout_seconds: float = 15.0) -> bytes:
    local = _local_path(media_url)
    if local is not None:
        try:
            return local.read_bytes()
        except OSError as exc:
            raise MediaError(f"Cannot read media file {local}: {exc}") from exc

    if media_url.startswith(("http://", "https://")):
        try:
            with httpx.Client(timeout=timeout_seconds, follow_redirects=True) as client:
                response = client.get(media_url)
        except httpx.InvalidURL as exc:
            raise MediaError(f"Invalid media URL: {exc}") from exc
        except httpx.HTTPError as exc:
            raise TransportError(f"Media download connectivity error: {exc}") from exc
        if response.status_code >= 400:
            raise TransportError(
                f"Media download returned HTTP {response.status_code}",
                status_code=response.status_code,
            )
        return response.content

    raise MediaError(f"Unsupported media URL format: {media_url}")
