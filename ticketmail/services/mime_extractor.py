"""Raw message parsing and readable-body extraction.

``extract_body`` never raises: when a body cannot be interpreted it falls
back to the raw text, trimmed and bounded to ``MAX_BODY_CHARS``.
"""

from __future__ import annotations

import html
import logging
import re
from dataclasses import dataclass, field
from email import policy
from email.header import decode_header, make_header
from email.message import Message
from email.parser import BytesHeaderParser
from email.utils import getaddresses

import nh3

from ticketmail.services.mail_errors import DecodeError
from ticketmail.services.text_decoder import (
    decode_base64,
    decode_bytes,
    decode_quoted_printable,
)

logger = logging.getLogger(__name__)

MAX_BODY_CHARS = 500
_MAX_MULTIPART_DEPTH = 5

_HEADER_BREAK_RE = re.compile(rb"\r?\n\r?\n")
_HTML_BLOCK_RE = re.compile(
    r"<(p|div|body|td|pre|blockquote|h[1-6])\b[^>]*>(.*?)</\1\s*>",
    re.IGNORECASE | re.DOTALL,
)
_BREAK_TAG_RE = re.compile(r"<br\s*/?>", re.IGNORECASE)
_GENERIC_BOUNDARY_RE = re.compile(rb"^--\S+")
_SPACES_RE = re.compile(r"[ \t]+")

_header_parser = BytesHeaderParser(policy=policy.default)


@dataclass
class ParsedMessage:
    """Headers (lower-cased names, unfolded, decoded) and the undecoded body bytes."""

    headers: dict[str, str] = field(default_factory=dict)
    body: bytes = b""
    charset: str | None = None

    def header(self, name: str, default: str = "") -> str:
        return self.headers.get(name.lower(), default)

    @property
    def subject(self) -> str:
        return decode_header_value(self.header("subject"))

    @property
    def sender(self) -> str:
        return decode_header_value(self.header("from"))

    @property
    def recipient(self) -> str:
        return decode_header_value(self.header("to"))

    @property
    def message_id(self) -> str | None:
        return self.header("message-id").strip() or None

    @property
    def content_type(self) -> str:
        return self.header("content-type")

    @property
    def transfer_encoding(self) -> str | None:
        return self.header("content-transfer-encoding").strip() or None

    @property
    def date(self) -> str | None:
        return self.header("date").strip() or None


def decode_header_value(value: str) -> str:
    """Decode RFC 2047 encoded words; returns the input when decoding fails."""
    if not value or "=?" not in value:
        return value.strip() if value else ""
    try:
        return str(make_header(decode_header(value))).strip()
    except Exception:
        return value.strip()


def extract_email_address(raw: str | None) -> str:
    """``"Jane <jane@example.com>"`` → ``jane@example.com``; otherwise the trimmed input."""
    if not raw:
        return ""
    for _, address in getaddresses([raw]):
        if address:
            return address.strip()
    return raw.strip()


def split_headers(raw: bytes) -> tuple[bytes, bytes]:
    """Split a message or MIME part at the first blank line."""
    if raw.startswith((b"\r\n", b"\n")):
        return b"", raw.split(b"\n", 1)[1]
    match = _HEADER_BREAK_RE.search(raw)
    if not match:
        return raw, b""
    return raw[: match.start()], raw[match.end() :]


def _header_text(message: Message, name: str, value: str) -> str:
    try:
        text = str(message.policy.header_fetch_parse(name, value))
    except Exception:
        logger.debug("Unparseable %s header, keeping raw value", name, exc_info=True)
        text = decode_header_value(value)
    # Raw 8-bit header bytes arrive surrogate-escaped; re-read them as UTF-8.
    text = text.encode("utf-8", errors="surrogateescape").decode("utf-8", errors="replace")
    return " ".join(text.split())


def _parse_header_block(block: bytes) -> Message:
    return _header_parser.parsebytes(block + b"\r\n\r\n")


def _collect_headers(message: Message) -> dict[str, str]:
    headers: dict[str, str] = {}
    for name, value in message.raw_items():
        key = name.strip().lower()
        if key and key not in headers:
            headers[key] = _header_text(message, name, value)
    return headers


def parse_headers(block: bytes) -> dict[str, str]:
    """Parse a header block into unfolded, decoded values.

    Names are lower-cased; the first occurrence of a repeated header wins.
    """
    return _collect_headers(_parse_header_block(block))


def parse_raw_message(raw: bytes | str) -> ParsedMessage:
    """Parse a raw RFC 822 message into headers and body bytes."""
    if isinstance(raw, str):
        raw = raw.encode("utf-8", errors="replace")
    header_block, body = split_headers(raw)
    message = _parse_header_block(header_block)
    return ParsedMessage(
        headers=_collect_headers(message),
        body=body,
        charset=message.get_content_charset(),
    )


def _content_headers(content_type: str | None) -> Message:
    if not content_type:
        return _parse_header_block(b"")
    line = "Content-Type: " + " ".join(content_type.split())
    return _parse_header_block(line.encode("utf-8", errors="replace"))


def _media_type(content_type: str | None) -> str:
    if not content_type:
        return ""
    return content_type.split(";", 1)[0].strip().lower()


def _decode_transfer(body: bytes, encoding: str | None, charset: str | None) -> str:
    """Decode a body per its Content-Transfer-Encoding and charset.

    Raises:
        DecodeError: when a base64 payload is malformed.
    """
    encoding = (encoding or "").strip().lower()
    if encoding == "base64":
        return decode_bytes(decode_base64(body), charset)
    if encoding == "quoted-printable":
        return decode_quoted_printable(decode_bytes(body, charset), charset)
    return decode_bytes(body, charset)


def _split_multipart(body: bytes, boundary: str | None) -> list[bytes]:
    """Split a multipart body into raw parts (each with its own header block)."""
    delimiter = f"--{boundary}".encode("utf-8") if boundary else None
    parts: list[bytes] = []
    current: list[bytes] | None = None
    for line in body.splitlines(keepends=True):
        marker = line.rstrip()
        if delimiter:
            is_close = marker == delimiter + b"--"
            is_delimiter = is_close or marker == delimiter
        else:
            is_delimiter = bool(_GENERIC_BOUNDARY_RE.match(marker))
            is_close = is_delimiter and marker.endswith(b"--")
        if is_delimiter:
            if current is not None:
                parts.append(b"".join(current))
            current = None if is_close else []
            if is_close and delimiter:
                break
            continue
        if current is not None:
            current.append(line)
    if current:
        parts.append(b"".join(current))
    return parts


def _is_attachment(part: Message) -> bool:
    return part.get_content_disposition() == "attachment" or bool(part.get_filename())


def _find_part(body: bytes, container: Message, wanted: str, depth: int = 0) -> str | None:
    """Return the decoded body of the first part of media type ``wanted``."""
    if depth > _MAX_MULTIPART_DEPTH:
        return None
    for raw_part in _split_multipart(body, container.get_boundary()):
        header_block, part_body = split_headers(raw_part)
        part = _parse_header_block(header_block)
        media = part.get_content_type()
        if media.startswith("multipart/"):
            nested = _find_part(part_body, part, wanted, depth + 1)
            if nested is not None:
                return nested
            continue
        if media != wanted or _is_attachment(part):
            continue
        charset = part.get_content_charset()
        try:
            return _decode_transfer(part_body, part.get("Content-Transfer-Encoding"), charset)
        except DecodeError as exc:
            logger.warning("Part decode failed, using raw part body: %s", exc)
            return decode_bytes(part_body, charset)
    return None


def _html_block_text(source: str) -> str | None:
    """Inner text of the first HTML block element, markup and scripts removed."""
    match = _HTML_BLOCK_RE.search(source)
    if not match:
        return None
    inner = _BREAK_TAG_RE.sub("\n", match.group(2))
    inner = html.unescape(nh3.clean(inner, tags=set()))
    lines = [_SPACES_RE.sub(" ", line).strip() for line in inner.splitlines()]
    return "\n".join(line for line in lines if line)


def _finalize(text: str, max_chars: int) -> str:
    text = text.replace("\r\n", "\n").strip()
    return text[:max_chars].rstrip()


def _extract(body: bytes, content_type: str, transfer_encoding: str | None) -> str:
    container = _content_headers(content_type)
    charset = container.get_content_charset()
    media = _media_type(content_type)
    if media.startswith("multipart/"):
        plain = _find_part(body, container, "text/plain")
        if plain is not None:
            return plain
        html_part = _find_part(body, container, "text/html")
        raw_text = decode_bytes(body, charset)
        html_text = _html_block_text(html_part if html_part is not None else raw_text)
        if html_text is not None:
            return html_text
        logger.warning("No readable part in multipart message, using raw body")
        return raw_text

    try:
        decoded = _decode_transfer(body, transfer_encoding, charset)
    except DecodeError as exc:
        logger.warning("Body decode failed, using raw body: %s", exc)
        decoded = decode_bytes(body, charset)

    if media in ("", "text/html"):
        html_text = _html_block_text(decoded)
        if html_text is not None:
            return html_text
    return decoded


def extract_body(
    body: str | bytes,
    content_type: str | None = None,
    transfer_encoding: str | None = None,
    *,
    max_chars: int = MAX_BODY_CHARS,
) -> str:
    """Return readable display text for a message body.

    Multipart messages yield their first text/plain part; failing that the
    first HTML block's text; single-part bodies are decoded per the
    top-level transfer encoding and charset. Output is trimmed and bounded
    to ``max_chars``.
    """
    if isinstance(body, str):
        body = body.encode("utf-8", errors="replace")
    if not body:
        return ""
    try:
        text = _extract(body, content_type or "", transfer_encoding)
    except Exception:
        logger.warning("Body extraction failed, using raw body", exc_info=True)
        text = decode_bytes(body)
    return _finalize(text, max_chars)


def extract_message_text(raw: bytes | str, *, max_chars: int = MAX_BODY_CHARS) -> str:
    """Parse a full raw message and extract its readable body."""
    message = parse_raw_message(raw)
    return extract_body(
        message.body,
        message.content_type,
        message.transfer_encoding,
        max_chars=max_chars,
    )
