"""
pinentry-rofi command line entry point.

Install:
    pip install .
    # or copy the pinentry-rofi script to ~/.local/bin

Configure gpg-agent.conf:
    pinentry-program /home/<user>/.local/bin/pinentry-rofi

Environment Variables:
    PINENTRY_ROFI_DEBUG=1     - Enable debug logging to stderr
    PINENTRY_ROFI_BIN         - Override the rofi binary
    PINENTRY_ROFI_TIMEOUT     - Default prompt timeout in seconds
    PINENTRY_ROFI_LOG         - Override the log file path
    PINENTRY_USER_DATA        - rofi prompt (set by gpg-agent callers)
    DISPLAY                   - X display handed to rofi
"""

import argparse
import logging
import logging.handlers
import os
import signal
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from . import __version__
from .rofi import DEFAULT_DISPLAY, DEFAULT_ROFI_BIN, DEFAULT_TIMEOUT, RofiBridge
from .server import PinentryServer

LOGGER_NAME = "pinentry-rofi"
DEFAULT_LOG_PATH = Path.home() / ".cache" / "pinentry-rofi" / "pinentry.log"

INSTALL_HELP = """\
INSTALL:
  1. Copy `pinentry-rofi` to `~/.local/bin` or `/usr/bin`.
  2. `chmod +x your/path/pinentry-rofi`.
  3. Set `pinentry-program` in `~/.gnupg/gpg-agent.conf`. For example:
     `pinentry-program <HOME>/.local/bin/pinentry-rofi`
  4. Restart gpg-agent `gpgconf --kill gpg-agent`
"""


def _env_flag(name: str) -> bool:
    return os.environ.get(name, "").lower() in ("1", "true", "yes")


def _env_int(name: str, default: int) -> int:
    value = os.environ.get(name, "")
    try:
        return int(value) if value else default
    except ValueError:
        return default


@dataclass
class Config:
    """Startup configuration gathered from the environment and flags."""

    display: str = DEFAULT_DISPLAY
    prompt: Optional[str] = None
    rofi_bin: str = DEFAULT_ROFI_BIN
    timeout: int = DEFAULT_TIMEOUT
    debug: bool = False
    log_file: Path = DEFAULT_LOG_PATH

    @classmethod
    def from_env(cls) -> "Config":
        return cls(
            display=os.environ.get("DISPLAY") or DEFAULT_DISPLAY,
            prompt=os.environ.get("PINENTRY_USER_DATA") or None,
            rofi_bin=os.environ.get("PINENTRY_ROFI_BIN") or DEFAULT_ROFI_BIN,
            timeout=_env_int("PINENTRY_ROFI_TIMEOUT", DEFAULT_TIMEOUT),
            debug=_env_flag("PINENTRY_ROFI_DEBUG"),
            log_file=Path(os.environ.get("PINENTRY_ROFI_LOG") or DEFAULT_LOG_PATH),
        )


# =============================================================================
# Logging Setup
# =============================================================================


def setup_logging(config: Config) -> logging.Logger:
    """Log to a rotating file, and to stderr when debugging.

    stdout carries the Assuan protocol, so nothing may be logged there.
    """
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(logging.DEBUG if config.debug else logging.INFO)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    try:
        config.log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.handlers.RotatingFileHandler(
            config.log_file, maxBytes=1024 * 1024, backupCount=3
        )
        file_handler.setFormatter(
            logging.Formatter("%(asctime)s [%(levelname)s] %(message)s")
        )
        logger.addHandler(file_handler)
    except OSError:
        pass  # Can't write to log file, continue without

    if config.debug:
        stderr_handler = logging.StreamHandler(sys.stderr)
        stderr_handler.setFormatter(logging.Formatter("[pinentry-rofi] %(message)s"))
        logger.addHandler(stderr_handler)

    if not logger.handlers:
        logger.addHandler(logging.NullHandler())
    return logger


# =============================================================================
# Arguments
# =============================================================================


def build_parser(config: Config) -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="pinentry-rofi",
        description="GnuPG pinentry that prompts through rofi",
        epilog=INSTALL_HELP,
        formatter_class=argparse.RawDescriptionHelpFormatter,
        allow_abbrev=False,
    )
    parser.add_argument(
        "-d",
        "--display",
        default=config.display,
        help=f"Set display (default: $DISPLAY or {DEFAULT_DISPLAY})",
    )
    parser.add_argument(
        "-p",
        "--prompt",
        default=config.prompt,
        help="Set rofi prompt (default: $PINENTRY_USER_DATA)",
    )
    parser.add_argument(
        "--rofi",
        dest="rofi_bin",
        default=config.rofi_bin,
        help=f"Selector executable (default: {DEFAULT_ROFI_BIN})",
    )
    parser.add_argument(
        "--timeout",
        type=int,
        default=config.timeout,
        help=f"Prompt timeout when gpg-agent sets none (default: {DEFAULT_TIMEOUT}s)",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        default=config.debug,
        help="Log debug output to stderr",
    )
    parser.add_argument(
        "--log-file",
        type=Path,
        default=config.log_file,
        help="Log file path",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )
    return parser


def parse_config(argv: Optional[list[str]] = None) -> tuple[Config, list[str]]:
    """Merge environment defaults with command line flags.

    Flags gpg-agent may pass to any pinentry (--ttyname, --lc-ctype, ...)
    are accepted and ignored.
    """
    config = Config.from_env()
    args, unknown = build_parser(config).parse_known_args(argv)
    config.display = args.display
    config.prompt = args.prompt or None
    config.rofi_bin = args.rofi_bin
    config.timeout = args.timeout if args.timeout > 0 else DEFAULT_TIMEOUT
    config.debug = args.debug
    config.log_file = args.log_file
    return config, unknown


def _terminate(signum, frame):
    # Unwinds through the bridge so an open rofi window is killed.
    raise SystemExit(128 + signum)


def main(argv: Optional[list[str]] = None) -> int:
    """Entry point."""
    config, ignored = parse_config(argv)
    log = setup_logging(config)
    log.info("pinentry-rofi %s starting", __version__)
    log.debug(
        "rofi=%s display=%s timeout=%ds", config.rofi_bin, config.display, config.timeout
    )
    if ignored:
        log.debug("Ignoring arguments: %s", ignored)

    for signum in (signal.SIGTERM, signal.SIGHUP):
        signal.signal(signum, _terminate)

    bridge = RofiBridge(
        rofi_bin=config.rofi_bin,
        display=config.display,
        prompt=config.prompt,
        default_timeout=config.timeout,
    )
    server = PinentryServer(bridge, sys.stdin.buffer, sys.stdout.buffer)
    return server.run()

