"""
Assuan pinentry server.

Reads one command per line from gpg-agent, keeps the prompt configuration in
a Session, runs rofi for GETPIN/CONFIRM/MESSAGE, and answers every command
with exactly one response before reading the next line.

Protocol summary:
    > SETDESC Enter%20passphrase
    < OK
    > GETPIN
    < D hunter2
    < OK
    > BYE
    < OK closing connection
"""

import enum
import logging
import os
import re
from dataclasses import dataclass
from typing import BinaryIO, Optional, Union

from . import __version__
from .assuan import (
    ERR_CANCELED,
    ERR_GENERAL,
    ERR_NO_PIN_ENTRY,
    ERR_PARAMETER,
    ERR_UNKNOWN_COMMAND,
    AssuanWriter,
    Data,
    Err,
    Ok,
    PercentDecodeError,
    decode_argument,
)
from .rofi import Interaction, Outcome, Result, RofiBridge
from .session import Session

log = logging.getLogger("pinentry-rofi.server")

FLAVOR = "rofi"
GREETING = "Pleased to meet you"

Response = Union[Ok, Data, Err]


class Keyword(enum.Enum):
    OPTION = "OPTION"
    SETTITLE = "SETTITLE"
    SETDESC = "SETDESC"
    SETPROMPT = "SETPROMPT"
    SETERROR = "SETERROR"
    SETOK = "SETOK"
    SETCANCEL = "SETCANCEL"
    SETNOTOK = "SETNOTOK"
    SETREPEAT = "SETREPEAT"
    SETREPEATERROR = "SETREPEATERROR"
    SETQUALITYBAR = "SETQUALITYBAR"
    SETTIMEOUT = "SETTIMEOUT"
    SETKEYINFO = "SETKEYINFO"
    GETPIN = "GETPIN"
    CONFIRM = "CONFIRM"
    MESSAGE = "MESSAGE"
    GETINFO = "GETINFO"
    NOP = "NOP"
    RESET = "RESET"
    BYE = "BYE"
    UNKNOWN = "UNKNOWN"


# SETxxx commands that store percent-decoded text in a Session field.
TEXT_FIELDS = {
    Keyword.SETTITLE: "title",
    Keyword.SETDESC: "description",
    Keyword.SETPROMPT: "prompt_text",
    Keyword.SETERROR: "error_text",
    Keyword.SETOK: "ok_label",
    Keyword.SETCANCEL: "cancel_label",
    Keyword.SETNOTOK: "not_ok_label",
    Keyword.SETREPEATERROR: "repeat_error",
}

INTERACTIONS = {
    Keyword.GETPIN: Interaction.GETPIN,
    Keyword.CONFIRM: Interaction.CONFIRM,
    Keyword.MESSAGE: Interaction.MESSAGE,
}


@dataclass(frozen=True)
class Command:
    keyword: Keyword
    name: str
    argument: str = ""


def parse_command(line: str) -> Optional[Command]:
    """
    Split a protocol line into keyword and raw argument.

    Returns None for lines that get no response: blank keep-alives and
    Assuan comments ("# ...").
    """
    line = line.rstrip("\r\n")
    if not line.strip() or line.startswith("#"):
        return None

    parts = line.split(None, 1)
    name = parts[0]
    argument = parts[1] if len(parts) > 1 else ""
    try:
        keyword = Keyword(name.upper())
    except ValueError:
        keyword = Keyword.UNKNOWN
    return Command(keyword, name, argument)


def outcome_response(kind: Interaction, result: Result) -> Response:
    """Translate a UI outcome into the response gpg-agent expects."""
    outcome = result.outcome
    if outcome is Outcome.VALUE and kind is Interaction.GETPIN:
        return Data(result.value or b"", "PIN_REPEATED" if result.repeated else None)
    if outcome in (Outcome.CONFIRMED, Outcome.ACKNOWLEDGED):
        return Ok()
    if outcome is Outcome.UNAVAILABLE:
        return Err(ERR_NO_PIN_ENTRY)
    # DECLINED, CANCELLED and TIMED_OUT all surface as a user cancellation.
    return Err(ERR_CANCELED)


class PinentryServer:
    """
    Pinentry that prompts through rofi.

    Owns the Session for the lifetime of the process; the bridge only ever
    sees snapshots of it.
    """

    def __init__(
        self,
        bridge: RofiBridge,
        input_stream: BinaryIO,
        output_stream: BinaryIO,
    ):
        self.bridge = bridge
        self.input = input_stream
        self.writer = AssuanWriter(output_stream)
        self.session = Session()
        self.running = True

    # -------------------------------------------------------------------------
    # Main loop
    # -------------------------------------------------------------------------

    def run(self) -> int:
        """
        Serve commands until BYE or end of input.

        Returns:
            Exit code (0 for success)
        """
        try:
            self.writer.ok(GREETING)
            while self.running:
                line = self.input.readline()
                if not line:
                    log.debug("End of input")
                    break
                self.handle_line(line)
        except KeyboardInterrupt:
            log.debug("Interrupted")
            return 1
        except OSError as e:
            log.error("Stream failure: %s", e)
            self._send_final_error()
            return 1
        finally:
            self.close()

        return 0

    def handle_line(self, line: bytes) -> None:
        """Parse, dispatch and answer a single raw protocol line."""
        text = line.decode("utf-8", "surrogateescape")
        command = parse_command(text)
        if command is None:
            return

        log.debug("> %s", text.rstrip("\r\n"))
        try:
            response = self.dispatch(command)
        except Exception:
            log.exception("Failed to handle %s", command.name)
            response = Err(ERR_GENERAL)
        self.writer.write_response(response)

    def close(self) -> None:
        """Release the selector if one is still on screen."""
        self.bridge.close()

    def _send_final_error(self) -> None:
        try:
            self.writer.err(ERR_GENERAL, "General error")
        except (OSError, ValueError) as e:
            log.debug("Final error write failed: %s", e)

    # -------------------------------------------------------------------------
    # Dispatch
    # -------------------------------------------------------------------------

    def dispatch(self, command: Command) -> Response:
        keyword = command.keyword
        arg = command.argument

        if keyword in TEXT_FIELDS:
            self._set_text(TEXT_FIELDS[keyword], arg)
            return Ok()

        elif keyword is Keyword.OPTION:
            key, _ = self.session.set_option(arg)
            log.debug("Option %s stored", key)
            return Ok()

        elif keyword is Keyword.SETTIMEOUT:
            self._set_timeout(arg)
            return Ok()

        elif keyword is Keyword.SETREPEAT:
            self.session.repeat_requested = True
            self._set_text("repeat_prompt", arg)
            return Ok()

        elif keyword is Keyword.SETQUALITYBAR:
            self.session.quality_bar_enabled = True
            return Ok()

        elif keyword is Keyword.SETKEYINFO:
            keyinfo = arg.strip()
            self.session.keyinfo = None if keyinfo in ("", "--clear") else keyinfo
            return Ok()

        elif keyword in INTERACTIONS:
            if keyword is Keyword.CONFIRM:
                self.session.one_button = "--one-button" in arg.split()
            return self._interact(INTERACTIONS[keyword])

        elif keyword is Keyword.GETINFO:
            return self._getinfo(arg.strip().lower())

        elif keyword is Keyword.NOP:
            return Ok()

        elif keyword is Keyword.RESET:
            self.session.reset()
            return Ok()

        elif keyword is Keyword.BYE:
            self.running = False
            return Ok("closing connection")

        else:
            log.debug("Unknown command: %s", command.name)
            return Err(ERR_UNKNOWN_COMMAND)

    def _set_text(self, field_name: str, arg: str) -> None:
        if not arg:
            setattr(self.session, field_name, None)
            return
        try:
            value = decode_argument(arg)
        except PercentDecodeError as e:
            log.warning("Bad escape in %s: %s", field_name, e)
            value = ""
        setattr(self.session, field_name, value)

    def _set_timeout(self, arg: str) -> None:
        value = arg.strip()
        if not re.fullmatch(r"[0-9]+", value):
            log.warning("Ignoring invalid timeout %r", value)
            self.session.timeout_seconds = None
            return
        self.session.timeout_seconds = int(value) or None

    def _interact(self, kind: Interaction) -> Response:
        result = self.bridge.interact(kind, self.session.snapshot())
        if result.outcome is Outcome.VALUE:
            log.info(
                "%s: passphrase entered (%d bytes)", kind.value, len(result.value or b"")
            )
        else:
            log.info("%s: %s", kind.value, result.outcome.value)
        return outcome_response(kind, result)

    def _getinfo(self, subject: str) -> Response:
        if subject == "pid":
            return Data(str(os.getpid()).encode("ascii"))
        elif subject == "version":
            return Data(__version__.encode("ascii"))
        elif subject == "flavor":
            return Data(FLAVOR.encode("ascii"))
        elif subject == "ttyinfo":
            parts = [
                self.session.option("ttyname") or "-",
                self.session.option("ttytype") or "-",
                self.bridge.display or "-",
            ]
            return Data(" ".join(parts).encode("utf-8"))
        return Err(ERR_PARAMETER)
