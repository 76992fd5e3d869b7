"""
Unit test fixtures for pinentry-rofi.

Fixture Hierarchy:
- fake_rofi: factory for shell scripts standing in for rofi (function-scoped)
"""

import pytest

from fakes import write_script


@pytest.fixture
def fake_rofi(tmp_path):
    """
    Factory for fake rofi executables.

    The script records its arguments to args.txt and its stdin to stdin.txt
    in tmp_path, runs `extra`, prints `output` and exits with `exit_code`.
    """

    def _make(output: str = "", exit_code: int = 0, extra: str = ""):
        body = f'printf "%s\\n" "$@" > "{tmp_path}/args.txt"\n'
        body += f'cat > "{tmp_path}/stdin.txt"\n'
        body += extra
        if output:
            body += f"printf '%s\\n' '{output}'\n"
        body += f"exit {exit_code}\n"
        return write_script(tmp_path / "rofi", body)

    return _make
