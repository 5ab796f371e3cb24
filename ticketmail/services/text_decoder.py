"""Content-Transfer-Encoding decoders for message bodies.

Pure functions, no I/O.
"""

from __future__ import annotations

import base64
import binascii
import codecs
import re

from ticketmail.services.mail_errors import DecodeError

_SOFT_LINE_BREAK_RE = re.compile(r"=\r?\n")
_ESCAPE_RUN_RE = re.compile(r"(?:=[0-9A-F]{2})+")
_WHITESPACE_RE = re.compile(r"\s+")

# Escaped UTF-8 punctuation normalized to plain characters before generic decoding.
KNOWN_ESCAPES = (
    ("=E2=80=99", "'"),
    ("=E2=80=93", "–"),
    ("=E2=80=AF", " "),
    ("=C2=A0", " "),
)


_UTF8_NAMES = {"utf-8", "utf8"}


def _normalize_charset(charset: str | None) -> str | None:
    name = (charset or "").strip().strip('"').lower()
    return name or None


def _escape_run_decoder(charset: str | None):
    def _decode(match: re.Match) -> str:
        run = match.group(0)
        data = bytes(int(run[i + 1 : i + 3], 16) for i in range(0, len(run), 3))
        if charset and charset not in _UTF8_NAMES:
            return decode_bytes(data, charset)
        try:
            return data.decode("utf-8")
        except UnicodeDecodeError:
            return data.decode("latin-1")

    return _decode


def decode_quoted_printable(value: str, charset: str | None = None) -> str:
    """Decode a quoted-printable string into text.

    Soft line breaks are removed and each run of ``=XX`` escapes is decoded
    with ``charset``. Without a charset (or with UTF-8) the known punctuation
    escapes in ``KNOWN_ESCAPES`` are replaced first and remaining runs are
    decoded as UTF-8, falling back to Latin-1 when a run is not valid UTF-8.
    """
    if not value:
        return ""
    charset = _normalize_charset(charset)
    text = _SOFT_LINE_BREAK_RE.sub("", value)
    if charset is None or charset in _UTF8_NAMES:
        for escaped, literal in KNOWN_ESCAPES:
            text = text.replace(escaped, literal)
    return _ESCAPE_RUN_RE.sub(_escape_run_decoder(charset), text)


def encode_quoted_printable(data: bytes) -> str:
    """Encode bytes as quoted-printable without soft line wrapping.

    Printable ASCII other than ``=`` and line breaks pass through; all other
    bytes become uppercase ``=XX`` escapes.
    """
    out: list[str] = []
    for byte in data:
        if byte in (0x0A, 0x0D) or (32 <= byte <= 126 and byte != 0x3D):
            out.append(chr(byte))
        else:
            out.append(f"={byte:02X}")
    return "".join(out)


def decode_base64(value: str | bytes) -> bytes:
    """Strictly decode base64, ignoring embedded whitespace/line breaks.

    Raises:
        DecodeError: on invalid alphabet or padding.
    """
    if isinstance(value, bytes):
        try:
            value = value.decode("ascii")
        except UnicodeDecodeError as exc:
            raise DecodeError("base64 payload contains non-ASCII bytes") from exc
    compact = _WHITESPACE_RE.sub("", value)
    try:
        return base64.b64decode(compact, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise DecodeError(f"Invalid base64 payload: {exc}") from exc


def decode_bytes(data: bytes, charset: str | None = None) -> str:
    """Decode bytes with the declared charset (utf-8 default, lossy)."""
    encoding = (charset or "utf-8").strip().strip('"').lower() or "utf-8"
    try:
        codecs.lookup(encoding)
    except LookupError:
        encoding = "utf-8"
    return data.decode(encoding, errors="replace")
