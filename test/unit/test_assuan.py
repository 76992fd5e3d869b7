"""Tests for the Assuan encoder: percent escaping, data lines, error codes."""

import io

import pytest

from pinentry_rofi.assuan import (
    ERR_CANCELED,
    ERR_GENERAL,
    ERR_NO_PIN_ENTRY,
    ERR_UNKNOWN_COMMAND,
    LINE_LENGTH,
    AssuanWriter,
    Data,
    Err,
    Ok,
    PercentDecodeError,
    data_lines,
    decode_argument,
    escape_bytes,
    unescape_bytes,
)


class FlushCountingStream(io.BytesIO):
    def __init__(self):
        super().__init__()
        self.flushes = 0
        self.unflushed = []

    def write(self, data):
        self.unflushed.append(data)
        return super().write(data)

    def flush(self):
        self.flushes += 1
        self.unflushed.clear()
        super().flush()


class TestErrorCodes:
    """The numeric codes gpg-agent and its clients branch on."""

    def test_cancelled_code(self):
        assert ERR_CANCELED == 83886179

    def test_no_pinentry_code(self):
        assert ERR_NO_PIN_ENTRY == 83886165

    def test_unknown_command_code(self):
        assert ERR_UNKNOWN_COMMAND == 83886355

    def test_general_error_code(self):
        assert ERR_GENERAL == 83886081

    def test_codes_are_distinct(self):
        assert len({ERR_CANCELED, ERR_NO_PIN_ENTRY, ERR_UNKNOWN_COMMAND}) == 3


class TestPercentEscaping:
    def test_reserved_bytes_escaped(self):
        assert escape_bytes(b"a%b\r\nc") == b"a%25b%0D%0Ac"

    def test_nul_and_del_escaped(self):
        assert escape_bytes(b"\x00\x7f") == b"%00%7F"

    def test_printable_and_utf8_untouched(self):
        value = "pässwörd ~!".encode("utf-8")
        assert escape_bytes(value) == value

    def test_round_trip_reserved_bytes(self):
        value = b"%\n\r\x00hunter2%%"
        assert unescape_bytes(escape_bytes(value)) == value

    def test_unescape_accepts_lower_case(self):
        assert unescape_bytes(b"%0a%7e") == b"\n~"

    @pytest.mark.parametrize("bad", [b"abc%", b"abc%4", b"%zz", b"%4g"])
    def test_malformed_escape_raises(self, bad):
        with pytest.raises(PercentDecodeError):
            unescape_bytes(bad)

    def test_decode_argument_to_text(self):
        assert decode_argument("Enter%20passphrase") == "Enter passphrase"

    def test_decode_argument_multibyte(self):
        assert decode_argument("caf%C3%A9%0Anext") == "café\nnext"

    def test_decode_argument_invalid_utf8_replaced(self):
        assert decode_argument("x%FFy") == "x\ufffdy"


class TestDataLines:
    def test_short_value_single_line(self):
        assert data_lines(b"hunter2") == [b"hunter2"]

    def test_empty_value_has_no_lines(self):
        assert data_lines(b"") == []

    def test_empty_data_is_bare_ok(self):
        stream = io.BytesIO()
        AssuanWriter(stream).write_response(Data(b""))
        assert stream.getvalue() == b"OK\n"

    def test_long_value_split_within_line_limit(self):
        lines = data_lines(b"x" * 2500)
        assert len(lines) == 3
        assert all(len(b"D " + line) <= LINE_LENGTH for line in lines)
        assert b"".join(lines) == b"x" * 2500

    def test_escape_never_split(self):
        lines = data_lines(b"%" * 400)
        for line in lines:
            assert len(line) % 3 == 0
            assert all(line[i : i + 3] == b"%25" for i in range(0, len(line), 3))
        assert unescape_bytes(b"".join(lines)) == b"%" * 400


class TestAssuanWriter:
    def test_every_line_flushed(self):
        stream = FlushCountingStream()
        writer = AssuanWriter(stream)
        writer.write_response(Data(b"hunter2"))
        assert stream.getvalue() == b"D hunter2\nOK\n"
        assert stream.flushes == 2
        assert stream.unflushed == []

    def test_ok_with_comment(self):
        stream = io.BytesIO()
        AssuanWriter(stream).write_response(Ok("closing connection"))
        assert stream.getvalue() == b"OK closing connection\n"

    def test_err_line(self):
        stream = io.BytesIO()
        AssuanWriter(stream).write_response(Err(ERR_CANCELED))
        assert stream.getvalue() == b"ERR 83886179 Operation cancelled <Pinentry>\n"

    def test_data_with_status(self):
        stream = io.BytesIO()
        AssuanWriter(stream).write_response(Data(b"a\nb", status="PIN_REPEATED"))
        assert stream.getvalue().splitlines() == [b"S PIN_REPEATED", b"D a%0Ab", b"OK"]

    def test_rejects_non_response(self):
        with pytest.raises(TypeError):
            AssuanWriter(io.BytesIO()).write_response("OK")
