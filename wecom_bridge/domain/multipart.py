from __future__ import annotations

import re
from dataclasses import dataclass, field


_CRLF = b"\r\n"
_HEADER_SEPARATOR = b"\r\n\r\n"
_DISPOSITION_RE = re.compile(
    r'Content-Disposition:\s*form-data;\s*name="([^"]+)"(?:;\s*filename="([^"]*)")?',
    re.IGNORECASE,
)
_CONTENT_TYPE_RE = re.compile(r"Content-Type:\s*([^\r\n]+)", re.IGNORECASE)


@dataclass(frozen=True)
class UploadedFile:
    field: str
    filename: str
    mime_type: str
    data: bytes


@dataclass
class MultipartResult:
    fields: dict[str, str] = field(default_factory=dict)
    files: list[UploadedFile] = field(default_factory=list)


def extract_boundary(content_type: str) -> str | None:
    if "boundary=" not in content_type:
        return None
    boundary = content_type.split("boundary=", 1)[1].split(";", 1)[0].strip()
    if len(boundary) >= 2 and boundary[0] == boundary[-1] == '"':
        boundary = boundary[1:-1]
    return boundary or None


def _split_parts(body: bytes, marker: bytes) -> list[bytes]:
    parts: list[bytes] = []
    start = body.find(marker)
    if start == -1:
        return parts
    start += len(marker)
    if body[start : start + 2] == _CRLF:
        start += 2

    while True:
        next_marker = body.find(marker, start)
        if next_marker == -1:
            break
        end = next_marker
        if body[end - 2 : end] == _CRLF:
            end -= 2
        parts.append(body[start:end])

        start = next_marker + len(marker)
        if body[start : start + 2] == b"--":
            break
        if body[start : start + 2] == _CRLF:
            start += 2
    return parts


def parse_multipart(body: bytes, boundary: str) -> MultipartResult:
    """Split a multipart/form-data body into text fields and file parts.

    A body that never mentions the boundary yields an empty result.
    """
    result = MultipartResult()
    for part in _split_parts(body, f"--{boundary}".encode("utf-8")):
        header_end = part.find(_HEADER_SEPARATOR)
        if header_end == -1:
            continue
        headers = part[:header_end].decode("utf-8", errors="replace")
        payload = part[header_end + len(_HEADER_SEPARATOR) :]

        disposition = _DISPOSITION_RE.search(headers)
        if disposition is None:
            continue
        name, filename = disposition.group(1), disposition.group(2)
        if filename is not None:
            if not filename:
                # File input submitted with nothing selected.
                continue
            content_type = _CONTENT_TYPE_RE.search(headers)
            result.files.append(
                UploadedFile(
                    field=name,
                    filename=filename,
                    mime_type=content_type.group(1).strip() if content_type else "application/octet-stream",
                    data=payload,
                )
            )
        else:
            result.fields[name] = payload.decode("utf-8", errors="replace")
    return result
