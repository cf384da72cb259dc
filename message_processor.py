"""
Inbound message handling: one WhatsApp text in, at most one reply out.
"""

import logging
import time
from typing import Callable, Optional

from bot_settings import BotSettings, BotSettingsStore
from menu import MenuResolver
from menu import texts
from metrics import Metrics
from registry import SessionRegistry
from transport import MessageEvent
from wa_io import WhatsAppIO, is_group_jid

log = logging.getLogger("bot.messages")


class MessageProcessor:
    """
    Applies the bot rules in front of the menu resolver: own messages, group
    chats and empty texts are skipped, disabled bots stay silent, and a session
    replies at most once per ``reply_cooldown_sec``.
    """

    def __init__(
        self,
        registry: SessionRegistry,
        resolver: MenuResolver,
        bot_settings: BotSettingsStore,
        io: Optional[WhatsAppIO] = None,
        metrics: Optional[Metrics] = None,
        reply_cooldown_sec: float = 2.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.registry = registry
        self.resolver = resolver
        self.bot_settings = bot_settings
        self.io = io or WhatsAppIO()
        self.metrics = metrics or Metrics()
        self.reply_cooldown_sec = reply_cooldown_sec
        self.clock = clock

    def _apology(self, settings: Optional[BotSettings]) -> str:
        text = settings.responses.get("error") if settings is not None else None
        return texts.with_footer(text or texts.GENERIC_APOLOGY)

    async def process(self, session_id: str, event: MessageEvent) -> Optional[str]:
        """Returns the reply that was sent, or None when the message was skipped."""
        session = self.registry.get(session_id)
        if session is None:
            return None
        contact_id = event.contact_id
        if event.from_me:
            return None
        if is_group_jid(contact_id):
            log.debug("Skipping group message from %s on %s", contact_id, session_id)
            return None
        text = (event.text or "").strip()
        if not text:
            return None

        # A readable message means the contact's crypto session is healthy again.
        session.decryption_attempts.pop(contact_id, None)
        self.metrics.inc("messages")

        settings = self.bot_settings.get(session_id)
        if not settings.enabled:
            log.debug("Bot disabled on %s, ignoring %s", session_id, contact_id)
            return None

        if session.transport is None:
            log.warning("No connection on %s, not answering %s", session_id, contact_id)
            return None

        now = self.clock()
        if session.last_reply_at and now - session.last_reply_at < self.reply_cooldown_sec:
            self.metrics.inc("rate_limited")
            log.info("Rate limited reply to %s on %s", contact_id, session_id)
            return None
        session.last_reply_at = now

        async with session.contact_lock(contact_id):
            log.info("Message from %s on %s: %s", contact_id, session_id, text[:100])
            try:
                reply = await self.resolver.resolve(text, session, settings)
            except Exception:
                self.metrics.inc("errors")
                log.exception("Resolving %r for %s failed", text, contact_id)
                reply = self._apology(settings)

            if self.registry.get(session_id) is not session:
                return None
            transport = session.transport
            if transport is None:
                log.warning("No connection on %s, dropping reply to %s", session_id, contact_id)
                return None
            try:
                sent = await self.io.send_text(transport, contact_id, reply)
            except Exception:
                self.metrics.inc("errors")
                log.exception("Sending reply to %s on %s failed", contact_id, session_id)
                return None
        if not sent:
            self.metrics.inc("errors")
            return None
        self.metrics.observe_reply()
        return reply
