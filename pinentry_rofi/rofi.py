"""
rofi bridge - runs the selector program for GETPIN, CONFIRM and MESSAGE.

rofi is driven in dmenu mode:
- GETPIN: hidden input (-password) with no menu rows, the entered text is
  read from stdout
- CONFIRM/MESSAGE: the button labels are fed on stdin, one per row, and the
  chosen row index comes back on stdout (-format i)

Exit status 0 means a selection was made; anything else (1 for Escape,
10-28 for custom key bindings) is treated as a dismissal.

Every invocation is bounded by a deadline. On expiry the child is killed and
the interaction resolves to TIMED_OUT, so gpg-agent never waits on a prompt
nobody answers.
"""

import enum
import html
import logging
import os
import re
import signal
import subprocess
import time
from dataclasses import dataclass
from typing import Optional

from .session import Session

log = logging.getLogger("pinentry-rofi.rofi")

DEFAULT_ROFI_BIN = "rofi"
DEFAULT_DISPLAY = ":0"
DEFAULT_TIMEOUT = 300
DEFAULT_PROMPT = "Passphrase"
DEFAULT_REPEAT_PROMPT = "Repeat"
DEFAULT_REPEAT_ERROR = "Passphrases do not match"
DEFAULT_OK_LABEL = "OK"
DEFAULT_CANCEL_LABEL = "Cancel"
REPEAT_ATTEMPTS = 3
# Longest wait handed to the selector; larger values overflow poll().
MAX_TIMEOUT = 24 * 60 * 60

# Shown between SETERROR text and the description.
ERROR_SEPARATOR = "\r***************************\r"


class Interaction(enum.Enum):
    GETPIN = "getpin"
    CONFIRM = "confirm"
    MESSAGE = "message"


class Outcome(enum.Enum):
    VALUE = "value"
    CONFIRMED = "confirmed"
    DECLINED = "declined"
    ACKNOWLEDGED = "acknowledged"
    CANCELLED = "cancelled"
    TIMED_OUT = "timed-out"
    UNAVAILABLE = "unavailable"


@dataclass(frozen=True)
class Result:
    outcome: Outcome
    value: Optional[bytes] = None
    repeated: bool = False


class SelectorUnavailable(Exception):
    """The selector program could not be spawned."""


class SelectorTimeout(Exception):
    """The selector did not finish before the deadline."""


def _kill(proc: subprocess.Popen) -> None:
    """Kill the selector and anything it spawned that still holds our pipes."""
    try:
        os.killpg(proc.pid, signal.SIGKILL)
    except OSError:
        proc.kill()


def strip_mnemonic(label: str) -> str:
    """Remove pinentry accelerator markers: "_OK" -> "OK", "__" -> "_"."""
    return re.sub(r"_(_)?", lambda m: m.group(1) or "", label)


def button_label(label: str) -> str:
    """Make a label fit on one dmenu row."""
    return re.sub(r"[\r\n]", " ", strip_mnemonic(label))


def format_message(session: Session) -> Optional[str]:
    """Build the -mesg text: error banner above the escaped description."""
    description = session.description
    error = session.error_text
    if description:
        description = html.escape(description).replace("\n", "\r")
    if error:
        error = html.escape(error).replace("\n", "\r")
        if description:
            return error + ERROR_SEPARATOR + description
        return error
    return description


class RofiBridge:
    """
    Invokes rofi for one interaction and interprets its result.

    The bridge holds no prompt state of its own; everything comes from the
    Session snapshot passed to interact().
    """

    def __init__(
        self,
        rofi_bin: str = DEFAULT_ROFI_BIN,
        display: str = DEFAULT_DISPLAY,
        prompt: Optional[str] = None,
        default_timeout: int = DEFAULT_TIMEOUT,
    ):
        self.rofi_bin = rofi_bin
        self.display = display
        self.prompt = prompt
        self.default_timeout = default_timeout
        self._active: Optional[subprocess.Popen] = None

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    def interact(self, kind: Interaction, session: Session) -> Result:
        """Run one interaction against a session snapshot."""
        timeout = min(session.timeout_seconds or self.default_timeout, MAX_TIMEOUT)
        deadline = time.monotonic() + timeout
        log.debug("%s: rofi=%s timeout=%ds", kind.value, self.rofi_bin, timeout)

        try:
            if kind is Interaction.GETPIN:
                return self._getpin(session, deadline)
            if kind is Interaction.CONFIRM and not session.one_button:
                return self._confirm(session, deadline)
            return self._message(session, deadline)
        except SelectorUnavailable as e:
            log.error("Cannot start %s: %s", self.rofi_bin, e)
            return Result(Outcome.UNAVAILABLE)
        except SelectorTimeout:
            log.warning("%s timed out after %ds", kind.value, timeout)
            return Result(Outcome.TIMED_OUT)

    def close(self) -> None:
        """Kill a selector that is still running."""
        proc = self._active
        if proc is not None and proc.poll() is None:
            log.debug("Killing orphaned selector pid=%d", proc.pid)
            _kill(proc)
            proc.wait()
        self._active = None

    def prompt_for(self, session: Session) -> str:
        prompt = (
            self.prompt
            or session.prompt_text
            or session.option("default-prompt")
            or DEFAULT_PROMPT
        )
        return prompt.replace(":", "").strip()

    def labels_for(self, session: Session) -> tuple[str, Optional[str], str]:
        """Return the (ok, not_ok, cancel) button labels."""
        ok = session.ok_label or session.option("default-ok") or DEFAULT_OK_LABEL
        cancel = (
            session.cancel_label
            or session.option("default-cancel")
            or DEFAULT_CANCEL_LABEL
        )
        not_ok = session.not_ok_label
        return (
            button_label(ok),
            button_label(not_ok) if not_ok else None,
            button_label(cancel),
        )

    def build_args(
        self,
        session: Session,
        prompt: str,
        rows: Optional[int] = None,
    ) -> list[str]:
        """Build the rofi command line.

        rows=None asks for hidden passphrase entry; otherwise rofi shows
        that many selectable rows read from stdin.
        """
        args = [
            self.rofi_bin,
            "-dmenu",
            "-display",
            self.display,
            "-disable-history",
            "-p",
            prompt,
        ]
        message = format_message(session)
        if message:
            args += ["-mesg", message]
        if session.title:
            args += ["-window-title", session.title]
        if rows is None:
            args += ["-password", "-l", "0", "-input", "/dev/null"]
        else:
            args += ["-no-custom", "-format", "i", "-l", str(rows)]
        return args

    # -------------------------------------------------------------------------
    # Interactions
    # -------------------------------------------------------------------------

    def _getpin(self, session: Session, deadline: float) -> Result:
        prompt = self.prompt_for(session)
        ask = session

        for _ in range(REPEAT_ATTEMPTS):
            first = self._ask_pin(ask, prompt, deadline)
            if first.outcome is not Outcome.VALUE or not session.repeat_requested:
                return first

            repeat = session.snapshot()
            repeat.error_text = None
            repeat_prompt = session.repeat_prompt or DEFAULT_REPEAT_PROMPT
            second = self._ask_pin(
                repeat, repeat_prompt.replace(":", "").strip(), deadline
            )
            if second.outcome is not Outcome.VALUE:
                return second
            if second.value == first.value:
                return Result(Outcome.VALUE, first.value, repeated=True)

            log.info("Repeated passphrase did not match")
            ask = session.snapshot()
            ask.error_text = session.repeat_error or DEFAULT_REPEAT_ERROR

        return Result(Outcome.CANCELLED)

    def _ask_pin(self, session: Session, prompt: str, deadline: float) -> Result:
        args = self.build_args(session, prompt)
        returncode, stdout = self._run(args, session, None, deadline)
        if returncode != 0:
            if stdout:
                log.warning("rofi exited %d with output, treating as cancel", returncode)
            return Result(Outcome.CANCELLED)
        if stdout.endswith(b"\n"):
            stdout = stdout[:-1]
        return Result(Outcome.VALUE, stdout)

    def _confirm(self, session: Session, deadline: float) -> Result:
        ok, not_ok, cancel = self.labels_for(session)
        choices = [(ok, Outcome.CONFIRMED)]
        if not_ok:
            choices.append((not_ok, Outcome.DECLINED))
        choices.append((cancel, Outcome.CANCELLED))

        selected = self._choose(session, [label for label, _ in choices], deadline)
        if selected is None:
            return Result(Outcome.DECLINED)
        return Result(choices[selected][1])

    def _message(self, session: Session, deadline: float) -> Result:
        ok, _, _ = self.labels_for(session)
        selected = self._choose(session, [ok], deadline)
        if selected is None:
            return Result(Outcome.CANCELLED)
        return Result(Outcome.ACKNOWLEDGED)

    def _choose(
        self, session: Session, labels: list[str], deadline: float
    ) -> Optional[int]:
        """Offer labels as rows; return the chosen index or None if dismissed."""
        args = self.build_args(session, self.prompt_for(session), rows=len(labels))
        returncode, stdout = self._run(args, session, labels, deadline)
        if returncode != 0:
            log.debug("rofi dismissed (exit %d)", returncode)
            return None
        try:
            index = int(stdout.strip())
        except ValueError:
            log.warning("Unexpected rofi output %r", stdout[:40])
            return None
        if not 0 <= index < len(labels):
            log.warning("rofi returned out-of-range row %d", index)
            return None
        return index

    # -------------------------------------------------------------------------
    # Process handling
    # -------------------------------------------------------------------------

    def _run(
        self,
        args: list[str],
        session: Session,
        rows: Optional[list[str]],
        deadline: float,
    ) -> tuple[int, bytes]:
        """Spawn rofi and wait for it, bounded by the deadline.

        Raises:
            SelectorUnavailable: when the program cannot be started
            SelectorTimeout: when the deadline passes first
        """
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise SelectorTimeout()

        env = dict(os.environ)
        env.update(session.child_environment())
        stdin_data = None
        if rows is not None:
            stdin_data = "".join(f"{row}\n" for row in rows).encode("utf-8")

        try:
            proc = subprocess.Popen(
                args,
                stdin=subprocess.PIPE if rows is not None else subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                env=env,
                start_new_session=True,
            )
        except OSError as e:
            raise SelectorUnavailable(str(e)) from e

        self._active = proc
        try:
            with proc:
                try:
                    stdout, stderr = proc.communicate(stdin_data, timeout=remaining)
                except subprocess.TimeoutExpired:
                    _kill(proc)
                    proc.communicate()
                    raise SelectorTimeout() from None
                finally:
                    if proc.poll() is None:
                        _kill(proc)
        finally:
            self._active = None

        if stderr:
            log.debug("rofi stderr: %s", stderr.decode("utf-8", "replace").strip())
        return proc.returncode, stdout
