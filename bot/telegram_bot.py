"""
Telegram bot: long-polling entry point and result notifier.

Mention the bot with a URL (or reply to a message containing one while
mentioning it) to queue an audio + video overview. In a private chat any
message with a URL works.

Commands:
    /start | /help          show help
    /status <job_id>        progress of a job
    /stats                  queue counts
"""

import logging
import os

from telegram import Message, Update
from telegram.error import TelegramError
from telegram.ext import (
    Application,
    CommandHandler,
    ContextTypes,
    MessageHandler,
    filters,
)

from agent.parser import extract_url_from_thread
from db.database import JobStore
from models.job import AUDIO, COMPLETED, FAILED, VIDEO, OriginRef

logger = logging.getLogger(__name__)

TELEGRAM_BOT_TOKEN: str = os.getenv("TELEGRAM_BOT_TOKEN", "")

# ── Help text ──────────────────────────────────────────────────────────────────

_HELP = (
    "NotebookLM Relay 🎧🎬\n\n"
    "Mention me with a link and I'll reply in the thread with an audio and a "
    "video overview of the page.\n"
    "  e.g. @{bot} https://example.com/article\n\n"
    "You can also reply to a message that contains a link and just mention me.\n\n"
    "/status <job_id> — check a job\n"
    "/stats — queue overview\n"
    "/help — show this message"
)

_NO_URL = (
    "❌ I couldn't find a URL. Mention me together with a link, e.g.\n"
    "@{bot} https://example.com/article"
)

_FAILURE = (
    "❌ Sorry, I couldn't generate the overviews for this link (job {job_id}).\n"
    "Please try again later."
)

_LABELS = {AUDIO: "🎵 Audio overview", VIDEO: "🎬 Video overview"}


def _store(context: ContextTypes.DEFAULT_TYPE) -> JobStore:
    return context.application.bot_data["store"]


def _mentions_bot(message: Message, username: str) -> bool:
    if message.chat.type == "private":
        return True
    text = (message.text or message.caption or "").lower()
    return f"@{username.lower()}" in text


def format_size(byte_size: int) -> str:
    return f"{byte_size / 1024 / 1024:.2f} MB"


# ── /help & /start ─────────────────────────────────────────────────────────────

async def help_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    await update.message.reply_text(_HELP.format(bot=context.bot.username))


# ── /status ────────────────────────────────────────────────────────────────────

async def status_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    args = context.args
    if not args or not args[0].isdigit():
        await update.message.reply_text("Usage: /status <job_id>")
        return

    store = _store(context)
    job = await store.get_job(int(args[0]))
    if not job:
        await update.message.reply_text(f"Job {args[0]} not found.")
        return

    msg = f"Job {job.id}\nStatus: {job.status} ({job.progress}%)"
    if job.current_step:
        msg += f"\nStep: {job.current_step}"

    if job.status == COMPLETED:
        for artifact in await store.get_artifacts(job.id):
            msg += f"\n\n{_LABELS[artifact.kind]}: {artifact.public_ref}"
    elif job.status == FAILED:
        # Error detail stays in operator logs
        msg += "\nThe job failed. Mention me with the link again to retry."

    await update.message.reply_text(msg)


# ── /stats ─────────────────────────────────────────────────────────────────────

async def stats_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    counts = await _store(context).stats()
    lines = "\n".join(f"• {status}: {n}" for status, n in counts.items())
    await update.message.reply_text(f"Queue\n{lines}")


# ── Mentions ───────────────────────────────────────────────────────────────────

async def mention_handler(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    message = update.message
    if message is None or not _mentions_bot(message, context.bot.username):
        return

    parent = message.reply_to_message
    parent_text = (parent.text or parent.caption) if parent else None
    url = extract_url_from_thread(message.text or message.caption, parent_text)

    logger.info(
        "Received mention",
        extra={"chat_id": message.chat_id, "user": message.from_user.id, "has_url": bool(url)},
    )

    if not url:
        await message.reply_text(
            _NO_URL.format(bot=context.bot.username),
            reply_to_message_id=message.message_id,
        )
        return

    origin = OriginRef(
        channel=str(message.chat_id),
        thread=str(message.message_id),
        user=str(message.from_user.id),
        workspace=str(context.bot.id),
    )
    store = _store(context)
    job_id = await store.enqueue(url, origin)

    ack = await message.reply_text(
        f"✅ Got it: {url}\n\n"
        f"🔄 Queued as job {job_id}. I'll post the results in this thread "
        "when they're ready (usually 10–20 minutes).",
        reply_to_message_id=message.message_id,
    )
    await store.set_ack_message(job_id, str(ack.message_id))


# ── Error handler ──────────────────────────────────────────────────────────────

async def error_handler(update: object, context: ContextTypes.DEFAULT_TYPE) -> None:
    logger.error("Telegram handler error", exc_info=context.error)
    if isinstance(update, Update) and update.effective_message:
        try:
            await update.effective_message.reply_text(
                "❌ Something went wrong. Please try again later."
            )
        except TelegramError as exc:
            logger.error("Error sending error reply", extra={"error": str(exc)})


# ── Notifier ───────────────────────────────────────────────────────────────────

class TelegramNotifier:
    """Posts job outcomes back into the originating thread."""

    def __init__(self, bot, store: JobStore):
        self.bot = bot
        self.store = store

    async def notify_completion(self, origin: OriginRef, job_id: int) -> None:
        artifacts = await self.store.get_artifacts(job_id)
        if not artifacts:
            raise RuntimeError(f"No media found for completed job {job_id}")

        lines = ["✅ Done!\n"]
        for artifact in sorted(artifacts, key=lambda a: a.kind):
            lines.append(f"{_LABELS[artifact.kind]}: {artifact.public_ref}")
            lines.append(f"   Size: {format_size(artifact.byte_size)}\n")
        lines.append("⏰ Links are valid for 7 days")

        await self.bot.send_message(
            chat_id=int(origin.channel),
            text="\n".join(lines),
            reply_to_message_id=int(origin.thread),
        )
        logger.info("Posted completion results", extra={"job_id": job_id, "chat_id": origin.channel})
        await self._delete_ack(origin, job_id)

    async def notify_failure(self, origin: OriginRef, job_id: int) -> None:
        await self.bot.send_message(
            chat_id=int(origin.channel),
            text=_FAILURE.format(job_id=job_id),
            reply_to_message_id=int(origin.thread),
        )
        logger.info("Posted failure notice", extra={"job_id": job_id, "chat_id": origin.channel})
        await self._delete_ack(origin, job_id)

    async def _delete_ack(self, origin: OriginRef, job_id: int) -> None:
        job = await self.store.get_job(job_id)
        if not job or not job.ack_message_ref:
            return
        try:
            await self.bot.delete_message(
                chat_id=int(origin.channel), message_id=int(job.ack_message_ref)
            )
        except TelegramError as exc:
            logger.warning(
                "Could not delete acknowledgement", extra={"job_id": job_id, "error": str(exc)}
            )


# ── App factory ────────────────────────────────────────────────────────────────

def create_bot_app(store: JobStore) -> Application:
    if not TELEGRAM_BOT_TOKEN:
        raise ValueError("TELEGRAM_BOT_TOKEN is not set in environment")

    app = Application.builder().token(TELEGRAM_BOT_TOKEN).build()
    app.bot_data["store"] = store

    app.add_handler(CommandHandler("start", help_command))
    app.add_handler(CommandHandler("help", help_command))
    app.add_handler(CommandHandler("status", status_command))
    app.add_handler(CommandHandler("stats", stats_command))
    app.add_handler(MessageHandler((filters.TEXT | filters.CAPTION) & ~filters.COMMAND, mention_handler))
    app.add_error_handler(error_handler)

    return app
