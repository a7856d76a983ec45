import asyncio
from dataclasses import dataclass

from aiogram import Bot
from aiogram.client.default import DefaultBotProperties
from aiogram.enums import ParseMode
from loguru import logger

import config
from database import after_commit
from services.documents import env


@dataclass
class Notification:
    chat_id: int
    subject: str
    text: str


outbox: asyncio.Queue = asyncio.Queue()


def notify(db, user, subject: str, template: str, **context):
    """Queue a message for ``user``; it is only released if the transaction commits."""
    if user is None or not user.telegram_id:
        logger.debug(f"Notification '{subject}' skipped: no chat for user {getattr(user, 'id', None)}")
        return
    try:
        text = env.get_template(f"notifications/{template}.txt").render(user=user, **context)
    except Exception as e:
        logger.warning(f"Notification '{subject}' for user {user.id} not rendered: {e}")
        return
    message = Notification(chat_id=user.telegram_id, subject=subject, text=text.strip())
    after_commit(db, lambda: outbox.put_nowait(message))


def create_bot():
    if not config.BOT_TOKEN:
        return None
    return Bot(token=config.BOT_TOKEN, default=DefaultBotProperties(parse_mode=ParseMode.HTML))


async def send(bot, message: Notification):
    if bot is None:
        logger.info(f"Notification for {message.chat_id} not sent: {message.subject}")
        return
    try:
        await bot.send_message(message.chat_id, f"<b>{message.subject}</b>\n{message.text}")
    except Exception as e:
        logger.warning(f"Notification to {message.chat_id} failed: {e}")


async def deliver(bot):
    while True:
        message = await outbox.get()
        await send(bot, message)
