import os
import logging
from dotenv import load_dotenv
from telegram import Bot

load_dotenv()
TOKEN = (
    os.getenv("TELEGRAM_BOT_TOKEN")
    or os.getenv("BOT_TOKEN")
    or ""
).strip().strip("'\"")


async def send_telegram_message(chat_id: int, text: str) -> bool:
    """Send ``text`` to ``chat_id``; returns False instead of raising on failure."""
    if not TOKEN:
        logging.info("TELEGRAM_BOT_TOKEN is not set; skipping message for chat_id=%s", chat_id)
        return False
    try:
        bot = Bot(token=TOKEN)
        logging.info("Sending Telegram message: chat_id=%s", chat_id)
        await bot.send_message(chat_id=chat_id, text=text)
        return True
    except Exception:
        logging.exception("Failed to send Telegram message to chat_id=%s", chat_id)
        return False


async def notify_plan_granted(user, payment) -> bool:
    """Tell the owner that a settled payment extended their plan."""
    if not getattr(user, "telegram_id", None):
        return False
    until = user.plan_expiry.strftime("%d.%m.%Y") if user.plan_expiry else "-"
    text = (
        f"✅ Payment received: {payment.amount:.2f} {payment.currency}\n"
        f"Plan: {user.plan}\n"
        f"Active until: {until}"
    )
    return await send_telegram_message(chat_id=int(user.telegram_id), text=text)
