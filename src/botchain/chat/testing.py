"""Test doubles for handlers that talk to the platform."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from .api import SendResult


@dataclass(frozen=True)
class SentMessage:
    chat_id: int
    text: str
    message_id: int


class RecordingApiClient:
    """In-memory ApiClient that records every message it is asked to send."""

    def __init__(self, *, fail_with: Optional[str] = None) -> None:
        self._next_message_id = 1
        self._fail_with = fail_with
        self.sent: list[SentMessage] = []

    async def send_message(self, chat_id: int, text: str) -> SendResult:
        if self._fail_with is not None:
            return SendResult(ok=False, error=self._fail_with)
        message_id = self._next_message_id
        self._next_message_id += 1
        self.sent.append(SentMessage(chat_id=chat_id, text=text, message_id=message_id))
        return SendResult(ok=True, message_id=message_id)

    def texts_for(self, chat_id: int) -> list[str]:
        return [item.text for item in self.sent if item.chat_id == chat_id]
