"""Prompt configuration accumulated from Assuan commands."""

import copy
from dataclasses import dataclass, field
from typing import Optional

# OPTION keys forwarded to the selector's environment.
OPTION_ENVIRONMENT = {
    "ttyname": "GPG_TTY",
    "ttytype": "GPG_TERM",
    "lc-ctype": "LC_CTYPE",
    "lc-messages": "LC_MESSAGES",
}


@dataclass
class Session:
    """State accumulated from Assuan protocol commands.

    Every field is sticky: it stays in effect for all later GETPIN, CONFIRM
    and MESSAGE requests until overwritten or cleared by RESET.
    """

    title: Optional[str] = None
    description: Optional[str] = None
    prompt_text: Optional[str] = None
    error_text: Optional[str] = None
    ok_label: Optional[str] = None
    cancel_label: Optional[str] = None
    not_ok_label: Optional[str] = None
    one_button: bool = False
    repeat_requested: bool = False
    repeat_prompt: Optional[str] = None
    repeat_error: Optional[str] = None
    quality_bar_enabled: bool = False
    timeout_seconds: Optional[int] = None
    keyinfo: Optional[str] = None
    opaque_options: dict[str, str] = field(default_factory=dict)

    def set_option(self, arg: str) -> tuple[str, str]:
        """Store an OPTION argument ("key" or "key=value")."""
        key, _, value = arg.partition("=")
        key = key.strip()
        self.opaque_options[key] = value
        return key, value

    def option(self, key: str) -> Optional[str]:
        """Return a non-empty OPTION value, or None."""
        return self.opaque_options.get(key) or None

    def child_environment(self) -> dict[str, str]:
        """Environment overrides derived from OPTION ttyname, lc-ctype, etc."""
        env = {}
        for key, variable in OPTION_ENVIRONMENT.items():
            value = self.option(key)
            if value:
                env[variable] = value
        return env

    def snapshot(self) -> "Session":
        """Independent copy handed to the UI bridge."""
        return copy.deepcopy(self)

    def reset(self) -> None:
        """Clear every field back to the startup state."""
        fresh = Session()
        for name in self.__dataclass_fields__:
            setattr(self, name, getattr(fresh, name))
