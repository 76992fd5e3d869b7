"""
Assuan wire format for the pinentry side of a gpg-agent connection.

Covers the three things the server needs from the protocol:
- percent-decoding of command arguments (SETDESC and friends)
- percent-escaping of data lines (D ...)
- error codes that gpg-agent and its clients branch on

Error codes are libgpg-error values tagged with the pinentry error source:
    code = (GPG_ERR_SOURCE_PINENTRY << 24) | GPG_ERR_xxx
"""

import logging
from dataclasses import dataclass
from typing import BinaryIO, Optional

log = logging.getLogger("pinentry-rofi.assuan")

# =============================================================================
# Error Codes (libgpg-error)
# =============================================================================

GPG_ERR_SOURCE_PINENTRY = 5

GPG_ERR_GENERAL = 1
GPG_ERR_NO_PIN_ENTRY = 85
GPG_ERR_CANCELED = 99
GPG_ERR_ASS_UNKNOWN_CMD = 275
GPG_ERR_ASS_PARAMETER = 280


def make_error(code: int) -> int:
    """Tag a gpg-error code with the pinentry error source."""
    return (GPG_ERR_SOURCE_PINENTRY << 24) | code


ERR_GENERAL = make_error(GPG_ERR_GENERAL)  # 83886081
ERR_NO_PIN_ENTRY = make_error(GPG_ERR_NO_PIN_ENTRY)  # 83886165
ERR_CANCELED = make_error(GPG_ERR_CANCELED)  # 83886179
ERR_UNKNOWN_COMMAND = make_error(GPG_ERR_ASS_UNKNOWN_CMD)  # 83886355
ERR_PARAMETER = make_error(GPG_ERR_ASS_PARAMETER)  # 83886360

ERROR_MESSAGES = {
    ERR_GENERAL: "General error",
    ERR_NO_PIN_ENTRY: "No pinentry",
    ERR_CANCELED: "Operation cancelled",
    ERR_UNKNOWN_COMMAND: "Unknown IPC command",
    ERR_PARAMETER: "IPC parameter error",
}

# Longest D line payload; libassuan rejects lines above 1000 bytes.
LINE_LENGTH = 1000
_DATA_CHUNK = LINE_LENGTH - len(b"D ")
_HEX_DIGITS = frozenset(b"0123456789abcdefABCDEF")


class PercentDecodeError(ValueError):
    """Raised when an argument contains a malformed %XX escape."""


# =============================================================================
# Percent Encoding
# =============================================================================


def _escape_byte(byte: int) -> bytes:
    # controls, DEL and '%'
    if byte < 0x20 or byte == 0x7F or byte == 0x25:
        return b"%%%02X" % byte
    return bytes((byte,))


def escape_bytes(data: bytes) -> bytes:
    """Percent-escape control bytes and '%' for use in a D line."""
    return b"".join(_escape_byte(byte) for byte in data)


def unescape_bytes(data: bytes) -> bytes:
    """Reverse escape_bytes(), also accepting lower-case hex digits.

    Raises:
        PercentDecodeError: on a '%' not followed by two hex digits
    """
    out = bytearray()
    i = 0
    while i < len(data):
        byte = data[i]
        if byte != 0x25:
            out.append(byte)
            i += 1
            continue
        digits = data[i + 1 : i + 3]
        if len(digits) != 2:
            raise PercentDecodeError(f"incomplete escape at offset {i}")
        if not _HEX_DIGITS.issuperset(digits):
            raise PercentDecodeError(
                f"invalid escape %{digits.decode('ascii', 'replace')}"
            )
        out.append(int(digits, 16))
        i += 3
    return bytes(out)


def decode_argument(arg: str) -> str:
    """Percent-decode a command argument into text.

    The decoded bytes are read as UTF-8; undecodable sequences are replaced
    rather than rejected.
    """
    raw = unescape_bytes(arg.encode("utf-8", "surrogateescape"))
    return raw.decode("utf-8", "replace")


def data_lines(data: bytes) -> list[bytes]:
    """Split escaped data into D line payloads no longer than an Assuan line.

    An escape sequence is never split across two lines. Empty data gives no
    lines at all.
    """
    lines: list[bytes] = []
    current = bytearray()
    for byte in data:
        piece = _escape_byte(byte)
        if len(current) + len(piece) > _DATA_CHUNK:
            lines.append(bytes(current))
            current = bytearray()
        current += piece
    if current:
        lines.append(bytes(current))
    return lines


# =============================================================================
# Responses
# =============================================================================


@dataclass(frozen=True)
class Ok:
    comment: Optional[str] = None


@dataclass(frozen=True)
class Data:
    """Data lines followed by a terminal OK."""

    value: bytes
    status: Optional[str] = None  # e.g. "PIN_REPEATED", sent as "S ..." first


@dataclass(frozen=True)
class Err:
    code: int
    description: Optional[str] = None

    @property
    def message(self) -> str:
        if self.description:
            return self.description
        return ERROR_MESSAGES.get(self.code, "Unknown error")


class AssuanWriter:
    """Writes protocol lines to a binary stream, flushing after every line.

    The peer blocks on each response, so nothing may stay buffered between
    lines.
    """

    def __init__(self, output: BinaryIO):
        self.output = output

    def send(self, line: bytes) -> None:
        self.output.write(line + b"\n")
        self.output.flush()
        if line.startswith(b"D "):
            log.debug("< D [%d bytes]", len(line) - 2)
        else:
            log.debug("< %s", line.decode("utf-8", "replace"))

    def ok(self, comment: Optional[str] = None) -> None:
        if comment:
            self.send(b"OK " + comment.encode("utf-8"))
        else:
            self.send(b"OK")

    def err(self, code: int, description: str) -> None:
        self.send(f"ERR {code} {description} <Pinentry>".encode("utf-8"))

    def status(self, keyword: str, args: str = "") -> None:
        line = f"S {keyword} {args}" if args else f"S {keyword}"
        self.send(line.encode("utf-8"))

    def data(self, value: bytes) -> None:
        for payload in data_lines(value):
            self.send(b"D " + payload)

    def write_response(self, response) -> None:
        """Emit the complete line set for one response."""
        if isinstance(response, Ok):
            self.ok(response.comment)
        elif isinstance(response, Data):
            if response.status:
                self.status(response.status)
            self.data(response.value)
            self.ok()
        elif isinstance(response, Err):
            self.err(response.code, response.message)
        else:
            raise TypeError(f"not a response: {response!r}")
