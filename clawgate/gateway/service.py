"""Gateway: routes chat messages to commands, approvals and agent runs."""

import asyncio
from typing import Any, Awaitable

from loguru import logger

from clawgate.agent.approval import ApprovalBroker
from clawgate.agent.commands import CommandHandler
from clawgate.agent.loop import AgentLoop
from clawgate.agent.runner import RunCoordinator, RunPayload
from clawgate.bus.events import InboundMessage
from clawgate.bus.queue import MessageBus
from clawgate.channels.base import BaseChannel
from clawgate.channels.manager import ChannelManager
from clawgate.config.loader import get_data_dir
from clawgate.config.schema import Config
from clawgate.config.settings import SettingsStore
from clawgate.cron.service import CronService
from clawgate.cron.types import CronJob
from clawgate.providers.base import BaseProvider, ProviderError
from clawgate.session.manager import SessionRegistry

ERROR_REPLY = "Sorry, I encountered an error. Please try again."
BUSY_REACTION = "⏳"


class Gateway:
    """
    Wires channels, commands, approvals, the run coordinator and the scheduler.

    Every inbound message is handled in a task of its own, in this order:
    a pending approval for the conversation takes the reply, then a pending
    menu selection, then slash commands; anything else becomes a run on the
    conversation's session.
    """

    def __init__(
        self,
        config: Config,
        bus: MessageBus | None = None,
        channels: ChannelManager | None = None,
        provider: BaseProvider | None = None,
        settings: SettingsStore | None = None,
        cron: CronService | None = None,
    ):
        self.config = config
        self.bus = bus or MessageBus()
        self.sessions = SessionRegistry(config.agent.agent_id)
        self.settings = settings or SettingsStore(get_data_dir() / "settings.json")
        self.cron = cron or CronService(config.cron_store_path(), max_sleep_s=config.cron.max_sleep_s)
        self.cron.on_job = self.on_cron_job
        self.channels = channels or ChannelManager(config, self.bus)
        self.approvals = ApprovalBroker(config.agent.approval_timeout_s)
        self.agent = AgentLoop(
            config,
            self.sessions,
            self.bus,
            self.approvals,
            cron=self.cron,
            settings=self.settings,
            send_message=self.send_message,
            provider=provider,
        )
        self.coordinator = RunCoordinator(
            self.agent.execute,
            bus=self.bus,
            abort_handler=self.agent.abort,
            timeout_s=config.agent.timeout_seconds,
        )
        self.commands = CommandHandler(
            self.agent,
            self.coordinator,
            self.sessions,
            selection_timeout_s=config.agent.selection_timeout_s,
        )
        self._running = False
        self._dispatch_task: asyncio.Task[None] | None = None
        self._handlers: set[asyncio.Task[None]] = set()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        logger.info(f"[Gateway] Starting (agent {self.config.agent.agent_id}, provider {self.agent.provider_name})")
        for name, channel in self.channels.channels.items():
            access = channel.config
            dms = ", ".join(access.allowed_dms) or "NONE (all blocked)"
            groups = ", ".join(access.allowed_groups) or "NONE (all blocked)"
            logger.info(f"[Security] {name}: DMs={dms} | Groups={groups}")

        try:
            await self.agent.initialize()
            logger.info("[Provider] Ready")
        except Exception as e:
            logger.error(f"[Provider] Init failed: {e}")

        if self.config.cron.enabled:
            await self.cron.start()
        await self.channels.start_all()
        self._running = True
        self._dispatch_task = asyncio.create_task(self._dispatch_loop())
        logger.info("[Gateway] Ready and listening for messages")

    async def stop(self) -> None:
        logger.info("[Gateway] Shutting down...")
        self._running = False
        self.cron.stop()
        if self._dispatch_task is not None:
            self._dispatch_task.cancel()
            await asyncio.gather(self._dispatch_task, return_exceptions=True)
            self._dispatch_task = None
        await self.channels.stop_all()
        await self.coordinator.stop()
        handlers = list(self._handlers)
        for task in handlers:
            task.cancel()
        if handlers:
            await asyncio.gather(*handlers, return_exceptions=True)
        try:
            await self.agent.close()
        except Exception as e:
            logger.error(f"[Gateway] Provider cleanup failed: {e}")
        logger.info("[Gateway] Goodbye!")

    async def _dispatch_loop(self) -> None:
        while self._running:
            msg = await self.bus.consume_inbound()
            task = asyncio.create_task(self.handle_message(msg))
            self._handlers.add(task)
            task.add_done_callback(self._handlers.discard)

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------

    def _channel(self, name: str) -> BaseChannel:
        channel = self.channels.get_channel(name)
        if channel is None:
            raise ProviderError(f"No channel for platform: {name}")
        return channel

    async def send_message(self, channel: str, chat_id: str, text: str) -> None:
        await self._channel(channel).send_message(chat_id, text)

    @staticmethod
    async def _best_effort(action: Awaitable[Any], what: str) -> None:
        try:
            await action
        except Exception as e:
            logger.debug(f"[Gateway] {what} failed: {e}")

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------

    async def handle_message(self, msg: InboundMessage) -> None:
        """Route one inbound message."""
        channel = self.channels.get_channel(msg.channel)
        if channel is None:
            logger.warning(f"[Gateway] Message from unknown channel {msg.channel}")
            return

        tag = msg.channel.upper()
        conversation = msg.conversation_key
        session_key = self.sessions.key_for(msg.channel, msg.chat_id)
        preview = msg.content[:100] + ("..." if len(msg.content) > 100 else "")
        logger.info(f"[{tag}] Incoming message from {msg.sender_id} (session {session_key}, group={msg.is_group}): {preview}")
        if msg.image is not None:
            logger.info(f"[{tag}] Image: {msg.image.size_kb}KB")

        if self.approvals.resolve(conversation, msg.content):
            logger.info(f"[{tag}] Resolved pending approval with: {msg.content}")
            return

        if self.commands.handle_pending_reply(conversation, msg.content):
            logger.info(f"[{tag}] Resolved pending selection: {msg.content}")
            return

        try:
            result = await self.commands.execute(
                msg.content,
                session_key,
                conversation,
                lambda text: channel.send_message(msg.chat_id, text),
            )
            if result.handled:
                logger.info(f"[{tag}] Command handled: {msg.content.split(' ')[0]}")
                if result.response:
                    await channel.send_message(msg.chat_id, result.response)
                return

            status = self.coordinator.get_queue_status(session_key)
            busy = status["pending"] > 0 or status["processing"]
            run = self.coordinator.submit(
                session_key,
                RunPayload(text=msg.content, image=msg.image, channel=msg.channel, chat_id=msg.chat_id),
            )

            await self._best_effort(channel.send_typing(msg.chat_id), "Typing indicator")
            if busy and msg.message_id:
                await self._best_effort(
                    channel.react(msg.chat_id, msg.message_id, BUSY_REACTION, msg.raw),
                    "Queued reaction",
                )

            outcome = await run.wait()
            await self._best_effort(channel.stop_typing(msg.chat_id), "Typing indicator")

            if outcome.status == "completed":
                if outcome.text:
                    await channel.send_message(msg.chat_id, outcome.text)
                logger.info(f"[{tag}] Done")
            elif outcome.status == "aborted":
                logger.info(f"[{tag}] Run {outcome.run_id} aborted")
            else:
                logger.error(f"[{tag}] Run {outcome.run_id} failed: {outcome.error}")
                await channel.send_message(msg.chat_id, ERROR_REPLY)

        except Exception as e:
            logger.error(f"[{tag}] Error: {e}")
            await self._best_effort(channel.stop_typing(msg.chat_id), "Typing indicator")
            try:
                await channel.send_message(msg.chat_id, ERROR_REPLY)
            except Exception as send_err:
                logger.error(f"[{tag}] Failed to send error message: {send_err}")

    # ------------------------------------------------------------------
    # Scheduler delivery
    # ------------------------------------------------------------------

    async def on_cron_job(self, job: CronJob) -> None:
        """Deliver a fired job: the literal message, or the agent's reply to it."""
        payload = job.payload
        logger.info(f"[Cron] ⏰ Executing job {job.id}{' (invoking agent)' if payload.invoke_agent else ''}")

        channel = self.channels.get_channel(payload.channel)
        if channel is None:
            logger.error(f"[Cron] No channel for platform: {payload.channel}")
            return

        if not payload.invoke_agent:
            await channel.send_message(payload.to, payload.message)
            logger.info(f"[Cron] Message sent for job {job.id}")
            return

        logger.info(f"[Cron] Invoking agent with: {payload.message}")
        result = await self.coordinator.enqueue(
            payload.session_key or f"cron:{job.id}",
            RunPayload(text=payload.message, channel=payload.channel, chat_id=payload.to),
        )
        if result.status == "failed":
            raise ProviderError(result.error or "Agent run failed")
        if result.ok and result.text:
            await channel.send_message(payload.to, result.text)
            logger.info(f"[Cron] Agent response sent for job {job.id}")
