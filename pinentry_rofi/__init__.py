"""pinentry-rofi - GnuPG pinentry that prompts through rofi."""

__version__ = "0.1.0"
