"""
pinentry-rofi E2E Test Fixtures

Runs the real entry point (python -m pinentry_rofi) as a subprocess and
talks Assuan to it over pipes, with a shell script standing in for rofi.

Fixture Hierarchy:
- Function-scoped: fake_rofi, pinentry_env (fresh per test)
- Conditional: gpg_home (only when gpg and gpg-agent are installed)
"""

import os
import shutil
import subprocess
import sys
from pathlib import Path
from typing import Generator, Dict, Any

import pytest

from pinentry_process import (
    PROJECT_ROOT,
    TEST_KEY_UID,
    TEST_PASSPHRASE,
    write_executable,
)


# =============================================================================
# Process Fixtures
# =============================================================================


@pytest.fixture
def pinentry_env(tmp_path: Path) -> Dict[str, str]:
    """Environment with HOME and the log file isolated to tmp_path."""
    env = os.environ.copy()
    env["HOME"] = str(tmp_path)
    env["PYTHONPATH"] = os.pathsep.join(
        filter(None, [str(PROJECT_ROOT), env.get("PYTHONPATH")])
    )
    env["PINENTRY_ROFI_LOG"] = str(tmp_path / "pinentry.log")
    for name in ("PINENTRY_ROFI_BIN", "PINENTRY_ROFI_DEBUG", "PINENTRY_USER_DATA"):
        env.pop(name, None)
    return env


@pytest.fixture
def fake_rofi(tmp_path: Path, pinentry_env: Dict[str, str]):
    """
    Factory installing a fake rofi as PINENTRY_ROFI_BIN.

    The script records its arguments to rofi-args.txt, prints `output` and
    exits with `exit_code`.
    """

    def _make(output: str = "", exit_code: int = 0, extra: str = "") -> Path:
        body = f'printf "%s\\n" "$@" > "{tmp_path}/rofi-args.txt"\n'
        body += extra
        if output:
            body += f"printf '%s\\n' '{output}'\n"
        body += f"exit {exit_code}\n"
        script = write_executable(tmp_path / "rofi", body)
        pinentry_env["PINENTRY_ROFI_BIN"] = str(script)
        return script

    return _make


# =============================================================================
# GPG Fixtures
# =============================================================================


@pytest.fixture
def gpg_home(tmp_path_factory, fake_rofi) -> Generator[Dict[str, Any], None, None]:
    """
    Isolated GNUPGHOME whose gpg-agent uses pinentry-rofi.

    The key is created with a loopback passphrase; afterwards every passphrase
    request goes through pinentry-rofi and the fake rofi, which answers with
    TEST_PASSPHRASE.

    Returns:
        Dict containing:
        - gnupghome: Path to GNUPGHOME
        - env: Environment dict with GNUPGHOME set
        - log: Path to the pinentry-rofi log file
    """
    if shutil.which("gpg") is None or shutil.which("gpg-agent") is None:
        pytest.skip("gpg not available")

    gnupghome = tmp_path_factory.mktemp("gpg")
    gnupghome.chmod(0o700)
    rofi = fake_rofi(output=TEST_PASSPHRASE)
    log_file = gnupghome / "pinentry.log"

    wrapper = write_executable(
        gnupghome / "pinentry-wrapper",
        f'PYTHONPATH="{PROJECT_ROOT}" exec "{sys.executable}" -m pinentry_rofi '
        f'--rofi "{rofi}" --log-file "{log_file}" "$@"\n',
    )
    (gnupghome / "gpg-agent.conf").write_text(
        f"pinentry-program {wrapper}\n"
        "allow-loopback-pinentry\n"
        "default-cache-ttl 0\n"
        "max-cache-ttl 0\n"
    )

    env = os.environ.copy()
    env["GNUPGHOME"] = str(gnupghome)

    gen_result = subprocess.run(
        [
            "gpg",
            "--batch",
            "--pinentry-mode",
            "loopback",
            "--passphrase",
            TEST_PASSPHRASE,
            "--quick-gen-key",
            TEST_KEY_UID,
            "ed25519",
            "sign",
            "never",
        ],
        env=env,
        capture_output=True,
        text=True,
        timeout=120,
    )
    if gen_result.returncode != 0:
        pytest.skip(f"Failed to generate GPG key: {gen_result.stderr}")

    yield {"gnupghome": gnupghome, "env": env, "log": log_file}

    subprocess.run(
        ["gpgconf", "--kill", "gpg-agent"],
        env=env,
        capture_output=True,
    )
