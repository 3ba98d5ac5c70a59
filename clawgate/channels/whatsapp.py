"""WhatsApp channel implementation using the Node.js bridge."""

import asyncio
import base64
import binascii
import json
from typing import Any

import websockets
from loguru import logger

from clawgate.bus.events import ImageAttachment
from clawgate.bus.queue import MessageBus
from clawgate.channels.base import BaseChannel
from clawgate.config.schema import WhatsAppConfig


def bare_id(jid: str) -> str:
    """Phone number or LID part of a JID: "123:4@s.whatsapp.net" -> "123"."""
    return jid.split("@", 1)[0].split(":", 1)[0]


class WhatsAppChannel(BaseChannel):
    """
    WhatsApp channel that connects to a Node.js bridge.

    The bridge handles the WhatsApp Web protocol and pairing. Communication
    between Python and Node.js is JSON over a WebSocket: the bridge sends
    `message`, `status`, `qr` and `error` events and accepts `send`,
    `presence` and `react` commands.
    """

    name = "whatsapp"

    def __init__(self, config: WhatsAppConfig, bus: MessageBus):
        super().__init__(config, bus)
        self.config: WhatsAppConfig = config
        self._ws: Any = None
        self._connected = False
        self.latest_qr: str | None = None

    @property
    def is_connected(self) -> bool:
        return self._ws is not None and self._connected

    async def start(self) -> None:
        """Start the WhatsApp channel by connecting to the bridge."""
        bridge_url = self.config.bridge_url
        token = self.config.bridge_auth_token.strip()
        headers = {"x-bridge-token": token} if token else None

        logger.info(f"[WhatsApp] Connecting to bridge at {bridge_url}...")
        self._running = True

        while self._running:
            try:
                async with websockets.connect(bridge_url, additional_headers=headers) as ws:
                    self._ws = ws
                    self._connected = True
                    logger.info("[WhatsApp] Connected to bridge")

                    async for message in ws:
                        try:
                            await self._handle_bridge_message(message)
                        except Exception as e:
                            logger.error(f"[WhatsApp] Error handling bridge message: {e}")

            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.warning(f"[WhatsApp] Bridge connection error: {e}")
            finally:
                self._connected = False
                self._ws = None

            if self._running:
                logger.info(f"[WhatsApp] Reconnecting in {self.config.reconnect_delay_s:g} seconds...")
                await asyncio.sleep(self.config.reconnect_delay_s)

    async def stop(self) -> None:
        """Stop the WhatsApp channel."""
        self._running = False
        self._connected = False

        if self._ws:
            await self._ws.close()
            self._ws = None

    async def _send(self, payload: dict[str, Any]) -> None:
        if not self._ws:
            raise RuntimeError("WhatsApp bridge not connected")
        await self._ws.send(json.dumps(payload))

    async def send_message(self, chat_id: str, text: str) -> None:
        await self._send({"type": "send", "to": chat_id, "text": text})

    async def send_typing(self, chat_id: str) -> None:
        await self._presence(chat_id, "composing")

    async def stop_typing(self, chat_id: str) -> None:
        await self._presence(chat_id, "paused")

    async def _presence(self, chat_id: str, state: str) -> None:
        if not self.is_connected:
            return
        try:
            await self._send({"type": "presence", "to": chat_id, "state": state})
        except Exception as e:
            logger.debug(f"[WhatsApp] Presence update failed: {e}")

    async def react(self, chat_id: str, message_id: str, emoji: str, raw: Any = None) -> None:
        if not self.is_connected or not message_id:
            return
        try:
            await self._send({"type": "react", "to": chat_id, "messageId": message_id, "emoji": emoji})
        except Exception as e:
            logger.debug(f"[WhatsApp] Reaction failed: {e}")

    def _id_variants(self, value: str) -> set[str]:
        variants = super()._id_variants(value)
        if "@" in value:
            variants.add(bare_id(value))
            variants.add(f"{bare_id(value)}@{value.split('@', 1)[1]}")
        return variants

    async def _handle_bridge_message(self, raw: str | bytes) -> None:
        """Handle a message from the bridge."""
        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning(f"[WhatsApp] Invalid JSON from bridge: {str(raw)[:100]}")
            return

        msg_type = data.get("type")

        if msg_type == "message":
            await self._on_message(data)

        elif msg_type == "status":
            status = data.get("status")
            logger.info(f"[WhatsApp] Status: {status}")
            if status == "connected":
                self._connected = True
                self.latest_qr = None
            elif status == "disconnected":
                self._connected = False

        elif msg_type == "qr":
            self.latest_qr = data.get("qr") or None
            logger.info("[WhatsApp] QR code received, open /qr on the gateway to pair")

        elif msg_type == "error":
            logger.error(f"[WhatsApp] Bridge error: {data.get('error')}")

    async def _on_message(self, data: dict[str, Any]) -> None:
        chat_id = str(data.get("chatId") or data.get("sender") or "")
        if not chat_id:
            return
        is_group = bool(data.get("isGroup", chat_id.endswith("@g.us")))
        sender = str(data.get("sender") or chat_id)
        content = str(data.get("content") or "")

        image = None
        encoded = data.get("image")
        if isinstance(encoded, dict) and encoded.get("data"):
            try:
                image = ImageAttachment(
                    data=base64.b64decode(encoded["data"]),
                    media_type=encoded.get("mediaType") or "image/jpeg",
                )
                logger.info(f"[WhatsApp] Image received, {image.size_kb} KB")
            except (binascii.Error, ValueError) as e:
                logger.warning(f"[WhatsApp] Could not decode image: {e}")
            if not content:
                content = "[Image]"

        if not content and image is None:
            return

        await self._handle_message(
            sender_id=sender,
            chat_id=chat_id,
            content=content,
            is_group=is_group,
            mentioned=bool(data.get("mentioned", False)),
            image=image,
            message_id=data.get("id"),
            metadata={"timestamp": data.get("timestamp")},
        )
