"""Command models and lightweight parsing helpers."""

from __future__ import annotations

import re
import shlex
from dataclasses import dataclass
from typing import Optional

from .models import Update

MIN_COMMAND_NAME_LENGTH = 1
MAX_COMMAND_NAME_LENGTH = 32
MIN_COMMAND_MENTION_LENGTH = 3
MAX_COMMAND_MENTION_LENGTH = 64
_COMMAND_NAME_CHARCLASS = "A-Za-z0-9_"
_COMMAND_MENTION_CHARCLASS = "A-Za-z0-9_"
_SLASH_COMMAND_PATTERN = (
    rf"^/([{_COMMAND_NAME_CHARCLASS}]"
    rf"{{{MIN_COMMAND_NAME_LENGTH},{MAX_COMMAND_NAME_LENGTH}}})"
    rf"(?:@([{_COMMAND_MENTION_CHARCLASS}]"
    rf"{{{MIN_COMMAND_MENTION_LENGTH},{MAX_COMMAND_MENTION_LENGTH}}}))?$"
)
_SLASH_COMMAND_RE = re.compile(_SLASH_COMMAND_PATTERN)


@dataclass(frozen=True)
class Command:
    """Leading slash command parsed from message text."""

    name: str
    args: str
    raw: str

    @property
    def argv(self) -> tuple[str, ...]:
        """Arguments split shell-style; falls back to whitespace on bad quoting."""

        if not self.args:
            return ()
        try:
            return tuple(shlex.split(self.args))
        except ValueError:
            return tuple(self.args.split())


def parse_command(
    text: Optional[str], *, bot_username: Optional[str] = None
) -> Optional[Command]:
    """Parse a leading ``/name[@bot] args`` command from plain text.

    Commands addressed to a different bot (``/start@other_bot``) are ignored
    when ``bot_username`` is given. Names are lowercased.
    """

    raw = str(text or "").strip()
    if not raw or not raw.startswith("/"):
        return None
    parts = raw.split(None, 1)
    token = parts[0]
    remainder = parts[1] if len(parts) > 1 else ""
    match = _SLASH_COMMAND_RE.match(token)
    if match is None:
        return None
    name, mention = match.group(1), match.group(2)
    normalized_bot = (bot_username or "").strip().lstrip("@").lower()
    if mention and normalized_bot and mention.lower() != normalized_bot:
        return None
    return Command(name=name.lower(), args=remainder.strip(), raw=raw)


def command_from_update(
    update: Update, *, bot_username: Optional[str] = None
) -> Optional[Command]:
    return parse_command(update.text, bot_username=bot_username)
