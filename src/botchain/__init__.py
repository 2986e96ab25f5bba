"""Update-dispatch core for chat bots."""

__version__ = "0.1.0"
