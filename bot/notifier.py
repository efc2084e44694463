"""Delivery of rendered alerts to chat subscribers."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Iterable, List

from telegram import Bot
from telegram.error import BadRequest, Forbidden, TelegramError

logger = logging.getLogger(__name__)


@dataclass
class EmissionReport:
    delivered: List[str] = field(default_factory=list)
    unreachable: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)

    @property
    def any_delivered(self) -> bool:
        return bool(self.delivered)


class TelegramNotifier:
    """Sends HTML alerts through a python-telegram-bot `Bot`."""

    def __init__(self, bot: Bot) -> None:
        self.bot = bot

    async def emit(self, chat_ids: Iterable[str], text: str) -> EmissionReport:
        report = EmissionReport()
        for chat_id in chat_ids:
            try:
                await self.bot.send_message(
                    chat_id=chat_id,
                    text=text,
                    parse_mode='HTML',
                    disable_web_page_preview=True,
                )
            except Forbidden as exc:
                logger.warning("Chat %s blocked the bot: %s", chat_id, exc)
                report.unreachable.append(chat_id)
            except BadRequest as exc:
                if "chat not found" in str(exc).lower():
                    logger.warning("Chat %s not found", chat_id)
                    report.unreachable.append(chat_id)
                else:
                    logger.error("Telegram rejected alert for %s: %s", chat_id, exc)
                    report.failed.append(chat_id)
            except TelegramError as exc:
                logger.error("Error sending alert to %s: %s", chat_id, exc)
                report.failed.append(chat_id)
            else:
                report.delivered.append(chat_id)
        return report


class LoggingNotifier:
    """Writes alerts to the log instead of a chat; used when Telegram is disabled."""

    async def emit(self, chat_ids: Iterable[str], text: str) -> EmissionReport:
        chat_ids = list(chat_ids) or ['console']
        logger.info("KOL alert:\n%s", text)
        return EmissionReport(delivered=chat_ids)
