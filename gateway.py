import asyncio
import functools
import logging
import os
import signal
import time
from typing import Any, Callable, Dict, List, Optional

from auth_store import AuthStore
from bot_logging import setup_logging
from bot_settings import BotSettingsStore
from config import AppConfig, load_config
from dotenv_loader import load_dotenv_near
from menu import ExternalContentFetcher, JsonMenuStore, MenuResolver, MenuStore, MenuStoreError
from message_processor import MessageProcessor
from metrics import Metrics
from registry import Session, SessionRegistry, SessionStatus
from scheduler import ScheduledCall, Scheduler
from state import SessionRecord, delete_session_record, load_session_records, save_session_record
from supervisor import ConnectionSupervisor
from transport import TransportFactory, load_transport_factory
from wa_io import WhatsAppIO, to_jid

CONFIG_PATH = os.getenv("WA_GATEWAY_CONFIG", "config.yaml")


class GatewayError(Exception):
    """A command that cannot be carried out (unknown session, missing argument)."""


class Gateway:
    """
    Wires the menu bot and the connection supervisor together and exposes the
    calls an operator surface (HTTP API, CLI) needs.
    """

    def __init__(
        self,
        config: AppConfig,
        transport_factory: TransportFactory,
        menu_store: Optional[MenuStore] = None,
        fetcher: Optional[ExternalContentFetcher] = None,
        scheduler: Optional[Scheduler] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.config = config
        self.metrics = Metrics()
        self.registry = SessionRegistry()
        self.registry.on_change = self._mirror
        self.auth_store = AuthStore(config.storage.auth_dir)
        self.state_path = config.storage.state_path or None
        self.menu_store = menu_store or JsonMenuStore(config.storage.menu_path)
        self.fetcher = fetcher or ExternalContentFetcher(
            timeout_sec=config.bot.fetch_timeout_sec, user_agent=config.bot.user_agent
        )
        self.resolver = MenuResolver(self.menu_store, self.fetcher)
        self.bot_settings = BotSettingsStore(self.state_path, config.bot.default_bot_type)
        self.io = WhatsAppIO(attempts=config.bot.send_retries)
        self.processor = MessageProcessor(
            self.registry,
            self.resolver,
            self.bot_settings,
            io=self.io,
            metrics=self.metrics,
            reply_cooldown_sec=config.bot.reply_cooldown_sec,
            clock=clock,
        )
        self.supervisor = ConnectionSupervisor(
            self.registry,
            transport_factory,
            self.auth_store,
            config=config.supervisor,
            scheduler=scheduler,
            metrics=self.metrics,
            on_message=self.processor.process,
            clock=clock,
        )
        self.clock = clock
        self.started = False
        self._menu_retry: Optional[ScheduledCall] = None

    # ---- lifecycle ----------------------------------------------------

    async def start(self) -> List[str]:
        """Opens the menu store, restores known sessions and connects them."""
        storage = self.config.storage
        try:
            await self.menu_store.connect(max_retries=storage.connect_retries, retry_delay=storage.connect_retry_delay_sec)
        except MenuStoreError as e:
            # Sessions still come up; replies fall back to the no-menu text meanwhile.
            logging.error("Menu database unavailable, retrying every %ss: %s", storage.reconnect_interval_sec, e)
            self._schedule_menu_retry()
        else:
            await self._seed_menu()
        loaded = self.bot_settings.load()
        logging.info("Loaded bot settings for %d sessions", loaded)

        self.supervisor.start()
        self.started = True

        records = load_session_records(self.state_path) if self.state_path else {}
        session_ids = sorted(set(self.auth_store.discover()) | set(records))
        for sid in session_ids:
            record = records.get(sid)
            session = self.registry.create(sid, record.session_name if record else None)
            if record is not None:
                session.current_menu_id = record.current_menu_id
                session.phone_number = record.phone_number
            self.bot_settings.get(sid)
            try:
                await self.supervisor.connect(sid)
            except Exception:
                logging.exception("Failed to restore session %s", sid)
        logging.info("Restored %d sessions", len(session_ids))
        return session_ids

    async def _seed_menu(self) -> None:
        if self.config.storage.seed_menu and isinstance(self.menu_store, JsonMenuStore):
            await self.menu_store.setup(seed=True)

    def _schedule_menu_retry(self) -> None:
        self._menu_retry = self.supervisor.scheduler.schedule_after(
            self.config.storage.reconnect_interval_sec, self._retry_menu_store, name="menu-store-retry"
        )

    async def _retry_menu_store(self) -> None:
        self._menu_retry = None
        if not self.started:
            return
        try:
            await self.menu_store.connect(max_retries=1)
        except MenuStoreError as e:
            logging.warning("Menu database still unavailable: %s", e)
            self._schedule_menu_retry()
            return
        logging.info("Menu database recovered")
        await self._seed_menu()

    async def stop(self) -> None:
        if self._menu_retry is not None:
            self._menu_retry.cancel()
            self._menu_retry = None
        await self.supervisor.stop()
        for session in self.registry.all():
            self._mirror(session)
        self.menu_store.close()
        self.started = False

    def _mirror(self, session: Session) -> None:
        if not self.state_path or session.deleted:
            return
        save_session_record(
            self.state_path,
            SessionRecord(
                session_id=session.session_id,
                status=session.status.value,
                current_menu_id=session.current_menu_id,
                updated_at=session.updated_at,
                session_name=session.session_name,
                phone_number=session.phone_number,
            ),
        )

    def _require(self, session_id: str) -> Session:
        if not session_id:
            raise GatewayError("No sessionId provided")
        session = self.registry.get(session_id)
        if session is None:
            raise GatewayError("Session not found")
        return session

    # ---- session commands ---------------------------------------------

    async def connect(self, session_id: str, session_name: Optional[str] = None) -> Dict[str, Any]:
        if not session_id:
            raise GatewayError("No sessionId provided")
        session = self.registry.get(session_id) or self.registry.create(session_id, session_name)
        if session_name:
            session.session_name = session_name
        self.bot_settings.get(session_id)
        await self.supervisor.connect(session_id)
        return session.to_status()

    async def disconnect(self, session_id: str) -> Dict[str, Any]:
        session = self._require(session_id)
        await self.supervisor.disconnect(session_id)
        return session.to_status()

    async def disconnect_and_delete(self, session_id: str) -> bool:
        self._require(session_id)
        deleted = await self.supervisor.disconnect_and_delete(session_id)
        self.bot_settings.remove(session_id)
        if self.state_path:
            delete_session_record(self.state_path, session_id)
        return deleted

    async def reset_session(self, session_id: str) -> Dict[str, Any]:
        """Drops everything known about the session and recreates it, disconnected."""
        if not session_id:
            raise GatewayError("No sessionId provided")
        logging.info("Force resetting session: %s", session_id)
        if self.registry.get(session_id, include_deleted=True) is not None:
            await self.supervisor.disconnect_and_delete(session_id)
        else:
            self.auth_store.erase(session_id)
        self.bot_settings.remove(session_id)
        if self.state_path:
            delete_session_record(self.state_path, session_id)
        session = self.registry.create(session_id)
        return session.to_status()

    async def cleanup_contact(self, session_id: str, contact_id: str) -> bool:
        if not session_id or not contact_id:
            raise GatewayError("Missing sessionId or contactJid")
        self._require(session_id)
        return await self.supervisor.cleanup_contact(session_id, contact_id)

    async def send_message(self, session_id: str, to: str, text: str, is_group: bool = False) -> str:
        if not session_id or not to or not text:
            raise GatewayError("Missing required parameters")
        session = self.registry.get(session_id)
        if session is None or session.status != SessionStatus.CONNECTED or session.transport is None:
            raise GatewayError("Session not connected")
        jid = to_jid(to, is_group)
        if not await self.io.send_text(session.transport, jid, text):
            raise GatewayError(f"Failed to send message to {jid}")
        logging.info("Message sent to %s via %s", jid, session_id)
        return jid

    def set_current_menu(self, session_id: str, menu_id: Any) -> Dict[str, Any]:
        session = self._require(session_id)
        session.current_menu_id = menu_id
        session.updated_at = self.clock()
        self._mirror(session)
        return session.to_status()

    # ---- queries ------------------------------------------------------

    def get_status(self, session_id: str) -> Dict[str, Any]:
        return self._require(session_id).to_status()

    def list_sessions(self) -> List[Dict[str, Any]]:
        return [s.to_status() for s in sorted(self.registry.all(), key=lambda s: s.session_id)]

    def get_qr(self, session_id: str) -> Optional[str]:
        return self._require(session_id).qr_payload

    def health(self, session_id: Optional[str] = None) -> Dict[str, Any]:
        if session_id:
            session = self._require(session_id)
            settings = self.bot_settings.get(session_id)
            last = session.last_heartbeat_at
            return {
                "session_id": session_id,
                "status": session.status.value,
                "bot_enabled": settings.enabled,
                "bot_type": settings.bot_type,
                "heartbeat_age_sec": int(self.clock() - last) if last else None,
                "heartbeat_failures": session.heartbeat_failures,
                "reconnect_attempts": session.reconnect_attempts,
                "decryption_contacts": len(session.decryption_attempts),
            }
        sessions = self.registry.all()
        data: Dict[str, Any] = {
            "menu_store": self.menu_store.is_healthy(),
            "sessions": len(sessions),
            "connected": sum(1 for s in sessions if s.status == SessionStatus.CONNECTED),
        }
        data.update(self.metrics.as_dict())
        data["summary"] = self.metrics.snapshot()
        return data

    # ---- bot settings -------------------------------------------------

    def get_bot_settings(self, session_id: str) -> Dict[str, Any]:
        return self.bot_settings.get(session_id).to_dict()

    def update_bot_settings(self, session_id: str, **changes: Any) -> Dict[str, Any]:
        return self.bot_settings.update(session_id, **changes).to_dict()

    def reset_bot_settings(self, session_id: str) -> Dict[str, Any]:
        return self.bot_settings.reset(session_id).to_dict()


async def _serve(config: AppConfig, transport_factory: TransportFactory) -> None:
    gateway = Gateway(config, transport_factory)
    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            pass
    await gateway.start()
    logging.info("Gateway running on %s:%s", config.gateway.host, config.gateway.port)
    try:
        await stop_event.wait()
    finally:
        logging.info("Shutting down gateway")
        await gateway.stop()


def main() -> None:
    # Load .env before anything reads os.environ (transport plugins included).
    try:
        load_dotenv_near(CONFIG_PATH, filename=".env", override=False)
    except Exception:
        pass
    config = load_config(CONFIG_PATH)
    setup_logging(config.gateway.log_path)
    if not config.transport.factory:
        logging.error("transport.factory is not configured in %s", CONFIG_PATH)
        raise SystemExit(2)
    factory = load_transport_factory(config.transport.factory)
    if config.transport.options:
        factory = functools.partial(factory, **config.transport.options)
    asyncio.run(_serve(config, factory))


if __name__ == "__main__":
    main()
