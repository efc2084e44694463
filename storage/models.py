"""Dataclasses representing stored monitor records."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional


@dataclass(slots=True)
class Subscriber:
    chat_id: str
    subscribed: bool = True
    tracked_accounts: list[str] = field(default_factory=list)
    tracked_tokens: list[str] = field(default_factory=list)

    def is_interested(self, account: str, token_id: str, kols: Optional[list[str]] = None) -> bool:
        if not self.subscribed:
            return False
        if account in self.tracked_accounts or token_id in self.tracked_tokens:
            return True
        return any(kol in self.tracked_accounts for kol in kols or [])

