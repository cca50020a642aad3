"""Telegram channel adapter (python-telegram-bot, long polling)."""

import logging
from pathlib import Path
from typing import Optional

from telegram import InlineKeyboardButton, InlineKeyboardMarkup, Update
from telegram.ext import (
    Application,
    CallbackQueryHandler,
    CommandHandler,
    ContextTypes,
    MessageHandler,
    filters,
)

from .base import ButtonEvent, Keyboard, Outbound, TextEvent

logger = logging.getLogger("media_courier.telegram")

WELCOME_MESSAGE = (
    "Hello! Send me a YouTube link and I'll fetch the video or audio for you."
)

# Telegram limit for photo captions
CAPTION_LIMIT = 1024


def to_markup(buttons: Keyboard) -> InlineKeyboardMarkup:
    return InlineKeyboardMarkup(
        [[InlineKeyboardButton(b.label, callback_data=b.payload) for b in row] for row in buttons]
    )


class TelegramChannel(Outbound):
    """Bridges Telegram updates to the orchestrator and back."""

    def __init__(self, bot_token: str):
        self.bot_token = bot_token
        self.app: Optional[Application] = None
        self.orchestrator = None

    def attach(self, orchestrator):
        """Route inbound events to ``orchestrator``."""
        self.orchestrator = orchestrator

    async def start(self):
        """Start the Telegram bot."""
        self.app = (
            Application.builder()
            .token(self.bot_token)
            .concurrent_updates(True)
            .build()
        )

        self.app.add_handler(CommandHandler("start", self._cmd_start))
        self.app.add_handler(MessageHandler(filters.TEXT & ~filters.COMMAND, self._handle_message))
        self.app.add_handler(CallbackQueryHandler(self._handle_callback))
        self.app.add_error_handler(self._handle_error)

        logger.info("Starting Telegram bot...")
        await self.app.initialize()
        await self.app.start()
        await self.app.updater.start_polling(drop_pending_updates=True)
        logger.info("Telegram bot started.")

    async def stop_polling(self):
        """Stop receiving updates; outbound calls keep working."""
        if self.app and self.app.updater.running:
            await self.app.updater.stop()

    async def stop(self):
        """Stop the Telegram bot."""
        if self.app:
            await self.stop_polling()
            await self.app.stop()
            await self.app.shutdown()
            logger.info("Telegram bot stopped.")

    @property
    def bot(self):
        if self.app is None:
            raise RuntimeError("Telegram bot not started")
        return self.app.bot

    # Inbound

    async def _cmd_start(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        await update.effective_message.reply_text(WELCOME_MESSAGE)

    async def _handle_message(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        message = update.effective_message
        if message is None or not message.text or self.orchestrator is None:
            return
        self.orchestrator.submit(TextEvent(destination_id=message.chat_id, text=message.text))

    async def _handle_callback(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        query = update.callback_query
        if query is None or self.orchestrator is None:
            return
        message = query.message
        self.orchestrator.submit(
            ButtonEvent(
                destination_id=message.chat.id if message else query.from_user.id,
                message_id=message.message_id if message else None,
                payload=query.data or "",
                event_id=query.id,
            )
        )

    async def _handle_error(self, update: object, context: ContextTypes.DEFAULT_TYPE):
        logger.error("Telegram update failed: %s", context.error, exc_info=context.error)

    # Outbound

    async def send_text(self, destination_id, text: str):
        await self.bot.send_message(chat_id=destination_id, text=text)

    async def send_photo(self, destination_id, url: str, caption: str, buttons: Keyboard):
        if len(caption) > CAPTION_LIMIT:
            caption = caption[: CAPTION_LIMIT - 3] + "..."
        await self.bot.send_photo(
            chat_id=destination_id,
            photo=url,
            caption=caption,
            reply_markup=to_markup(buttons),
        )

    async def send_buttons(self, destination_id, text: str, buttons: Keyboard):
        await self.bot.send_message(
            chat_id=destination_id, text=text, reply_markup=to_markup(buttons)
        )

    async def send_audio(self, destination_id, path: Path, title: Optional[str] = None):
        with open(path, "rb") as f:
            await self.bot.send_audio(
                chat_id=destination_id,
                audio=f,
                title=title,
                filename=path.name,
                read_timeout=120,
                write_timeout=120,
            )

    async def send_video(self, destination_id, path: Path, caption: Optional[str] = None):
        with open(path, "rb") as f:
            await self.bot.send_video(
                chat_id=destination_id,
                video=f,
                caption=caption[:CAPTION_LIMIT] if caption else None,
                filename=path.name,
                supports_streaming=True,
                read_timeout=120,
                write_timeout=120,
            )

    async def edit_buttons(self, destination_id, message_id: int, buttons: Keyboard):
        await self.bot.edit_message_reply_markup(
            chat_id=destination_id,
            message_id=message_id,
            reply_markup=to_markup(buttons) if buttons else None,
        )

    async def acknowledge(self, event_id: str):
        await self.bot.answer_callback_query(callback_query_id=event_id)
