"""Telegram channel implementation using python-telegram-bot."""

import asyncio
import re
from typing import Any

from loguru import logger
from telegram import Message, Update
from telegram.constants import ChatAction
from telegram.ext import Application, CommandHandler, ContextTypes, MessageHandler, filters

from clawgate.bus.events import ImageAttachment
from clawgate.bus.queue import MessageBus
from clawgate.channels.base import BaseChannel
from clawgate.config.schema import TelegramConfig

MAX_TELEGRAM_LENGTH = 4096


def _markdown_to_telegram_html(text: str) -> str:
    """
    Convert markdown to Telegram-safe HTML.
    """
    if not text:
        return ""

    code_blocks: list[str] = []

    def save_code_block(m: re.Match) -> str:
        code_blocks.append(m.group(1))
        return f"\x00CB{len(code_blocks) - 1}\x00"

    text = re.sub(r"```[\w]*\n?([\s\S]*?)```", save_code_block, text)

    inline_codes: list[str] = []

    def save_inline_code(m: re.Match) -> str:
        inline_codes.append(m.group(1))
        return f"\x00IC{len(inline_codes) - 1}\x00"

    text = re.sub(r"`([^`]+)`", save_inline_code, text)

    text = re.sub(r"^#{1,6}\s+(.+)$", r"\1", text, flags=re.MULTILINE)
    text = text.replace("&", "&amp;").replace("<", "&lt;").replace(">", "&gt;")
    text = re.sub(r"\[([^\]]+)\]\(([^)]+)\)", r'<a href="\2">\1</a>', text)

    # Chat replies use WhatsApp-style *bold*; **bold** is accepted as well
    text = re.sub(r"\*\*(.+?)\*\*", r"<b>\1</b>", text)
    text = re.sub(r"(?<![\w*])\*([^*\n]+)\*(?![\w*])", r"<b>\1</b>", text)
    text = re.sub(r"(?<![a-zA-Z0-9])_([^_\n]+)_(?![a-zA-Z0-9])", r"<i>\1</i>", text)
    text = re.sub(r"~~(.+?)~~", r"<s>\1</s>", text)
    text = re.sub(r"^[-*]\s+", "• ", text, flags=re.MULTILINE)

    for i, code in enumerate(inline_codes):
        escaped = code.replace("&", "&amp;").replace("<", "&lt;").replace(">", "&gt;")
        text = text.replace(f"\x00IC{i}\x00", f"<code>{escaped}</code>")

    for i, code in enumerate(code_blocks):
        escaped = code.replace("&", "&amp;").replace("<", "&lt;").replace(">", "&gt;")
        text = text.replace(f"\x00CB{i}\x00", f"<pre><code>{escaped}</code></pre>")

    return text


def _chunk_message(text: str, max_len: int = MAX_TELEGRAM_LENGTH) -> list[str]:
    """Split a message into chunks that fit within Telegram's limit."""
    if len(text) <= max_len:
        return [text]

    chunks: list[str] = []
    remaining = text
    while remaining:
        if len(remaining) <= max_len:
            chunks.append(remaining)
            break
        cut = remaining.rfind("\n\n", 0, max_len)
        if cut <= 0:
            cut = remaining.rfind("\n", 0, max_len)
        if cut <= 0:
            cut = max_len
        chunks.append(remaining[:cut])
        remaining = remaining[cut:].lstrip("\n")
    return chunks


def _normalize_command_text(text: str, bot_username: str | None = None) -> str:
    """Strip the "@botname" suffix Telegram adds to commands in groups."""
    raw = (text or "").strip()
    if not raw.startswith("/"):
        return text
    command, _, rest = raw.partition(" ")
    name, _, target = command.partition("@")
    if target and bot_username and target.lower() != bot_username.lower():
        return text
    return f"{name.lower()} {rest.strip()}".strip()


class TelegramChannel(BaseChannel):
    """
    Telegram channel using long polling.

    Simple and reliable - no webhook/public IP needed.
    """

    name = "telegram"

    def __init__(self, config: TelegramConfig, bus: MessageBus):
        super().__init__(config, bus)
        self.config: TelegramConfig = config
        self._app: Application | None = None
        self._bot_username: str | None = None
        self._bot_id: int | None = None
        self._typing_tasks: dict[int, asyncio.Task[None]] = {}
        self._typing_holds: dict[int, int] = {}
        self._typing_interval_s: float = 4.0

    @property
    def is_connected(self) -> bool:
        return self._running and self._app is not None and self._bot_id is not None

    async def start(self) -> None:
        """Start the Telegram bot with long polling."""
        if not self.config.token:
            logger.error("[Telegram] Bot token not configured")
            return

        self._running = True

        builder = Application.builder().token(self.config.token)
        if self.config.proxy:
            builder = builder.proxy(self.config.proxy).get_updates_proxy(self.config.proxy)
        self._app = builder.build()

        self._app.add_handler(CommandHandler("start", self._on_start))
        self._app.add_handler(MessageHandler(filters.TEXT | filters.PHOTO, self._on_message))

        logger.info("[Telegram] Starting bot (polling mode)...")

        await self._app.initialize()
        await self._app.start()

        bot_info = await self._app.bot.get_me()
        self._bot_username = bot_info.username
        self._bot_id = bot_info.id
        logger.info(f"[Telegram] Bot @{bot_info.username} connected")

        await self._app.updater.start_polling(
            allowed_updates=["message"],
            drop_pending_updates=True,
        )

        while self._running:
            await asyncio.sleep(1)

    async def stop(self) -> None:
        """Stop the Telegram bot."""
        self._running = False

        if self._app:
            logger.info("[Telegram] Stopping bot...")
            self._typing_holds.clear()
            for chat_id in list(self._typing_tasks.keys()):
                self._stop_typing(chat_id)
            await self._app.updater.stop()
            await self._app.stop()
            await self._app.shutdown()
            self._app = None
            self._bot_id = None

    async def send_message(self, chat_id: str, text: str) -> None:
        """Send a message, as HTML when it parses and as plain text otherwise."""
        if not self._app:
            raise RuntimeError("Telegram bot not running")

        target = int(chat_id)
        try:
            for chunk in _chunk_message(_markdown_to_telegram_html(text)):
                await self._app.bot.send_message(chat_id=target, text=chunk, parse_mode="HTML")
        except Exception as e:
            logger.warning(f"[Telegram] HTML parse failed, falling back to plain text: {e}")
            for chunk in _chunk_message(text):
                await self._app.bot.send_message(chat_id=target, text=chunk)

    async def send_typing(self, chat_id: str) -> None:
        target = int(chat_id)
        self._typing_holds[target] = self._typing_holds.get(target, 0) + 1
        self._start_typing(target)

    async def stop_typing(self, chat_id: str) -> None:
        # one hold per in-flight run; the indicator ends with the last one
        target = int(chat_id)
        holds = self._typing_holds.get(target, 0) - 1
        if holds > 0:
            self._typing_holds[target] = holds
            return
        self._typing_holds.pop(target, None)
        self._stop_typing(target)

    async def react(self, chat_id: str, message_id: str, emoji: str, raw: Any = None) -> None:
        if not self._app or not message_id:
            return
        try:
            await self._app.bot.set_message_reaction(
                chat_id=int(chat_id),
                message_id=int(message_id),
                reaction=emoji,
            )
        except Exception as e:
            logger.debug(f"[Telegram] Reaction failed: {e}")

    async def _on_start(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        """Handle /start command."""
        if not update.message or not update.effective_user:
            return

        user = update.effective_user
        await update.message.reply_text(
            f"👋 Hi {user.first_name}! I'm clawgate.\n\n"
            "Send me a message and I'll respond! Try /help for commands."
        )

    def _is_mentioned(self, message: Message) -> bool:
        reply = message.reply_to_message
        if reply and reply.from_user and self._bot_id and reply.from_user.id == self._bot_id:
            return True
        text = message.text or message.caption or ""
        return bool(self._bot_username) and f"@{self._bot_username}".lower() in text.lower()

    async def _on_message(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        """Handle incoming text and photo messages."""
        if not update.message or not update.effective_user:
            return

        message = update.message
        user = update.effective_user
        is_group = message.chat.type != "private"
        mentioned = self._is_mentioned(message) if is_group else False

        # Stable numeric id, with the username for allowlist compatibility
        sender_id = str(user.id)
        if user.username:
            sender_id = f"{sender_id}|{user.username}"

        if not self.is_allowed(sender_id, str(message.chat_id), is_group=is_group, mentioned=mentioned):
            return

        content = _normalize_command_text(message.text or message.caption or "", self._bot_username)

        image = None
        if message.photo and self._app:
            try:
                file = await self._app.bot.get_file(message.photo[-1].file_id)
                data = await file.download_as_bytearray()
                image = ImageAttachment(data=bytes(data), media_type="image/jpeg")
                logger.debug(f"[Telegram] Downloaded photo, {image.size_kb} KB")
            except Exception as e:
                logger.error(f"[Telegram] Failed to download photo: {e}")
            if not content:
                content = "[Image]"

        if not content and image is None:
            return

        await self._handle_message(
            sender_id=sender_id,
            chat_id=str(message.chat_id),
            content=content,
            is_group=is_group,
            mentioned=mentioned,
            image=image,
            message_id=str(message.message_id),
            raw=message,
            metadata={
                "user_id": user.id,
                "username": user.username,
                "first_name": user.first_name,
            },
        )

    def _start_typing(self, chat_id: int) -> None:
        running = self._typing_tasks.get(chat_id)
        if not self._app or (running is not None and not running.done()):
            return

        async def _loop() -> None:
            while self._running and self._app:
                try:
                    await self._app.bot.send_chat_action(chat_id=chat_id, action=ChatAction.TYPING)
                except Exception:
                    return
                await asyncio.sleep(self._typing_interval_s)

        self._typing_tasks[chat_id] = asyncio.create_task(_loop())

    def _stop_typing(self, chat_id: int) -> None:
        task = self._typing_tasks.pop(chat_id, None)
        if task and not task.done():
            task.cancel()
