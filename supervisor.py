import asyncio
import logging
import random
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, List, Optional, Set

from auth_store import AuthStore
from config import SupervisorConfig
from metrics import Metrics
from registry import DecryptionAttempt, Session, SessionRegistry, SessionStatus
from scheduler import AsyncioScheduler, Scheduler, compute_backoff_delay
from transport import (
    CloseEvent,
    DecryptionFailedEvent,
    DisconnectReason,
    EventSink,
    MessageEvent,
    OpenEvent,
    QrEvent,
    Transport,
    TransportError,
    TransportErrorEvent,
    TransportEvent,
    TransportFactory,
    render_qr,
)

log = logging.getLogger("supervisor")

MessageHandler = Callable[[str, MessageEvent], Awaitable[None]]


@dataclass
class _Envelope:
    session_id: str
    generation: int
    event: TransportEvent


class ConnectionSupervisor:
    """
    Owns the connection lifecycle of every session.

    Transport callbacks only enqueue typed events; a single task drains the
    queue and applies them, so lifecycle handlers never interleave with each
    other. Inbound messages are handed to ``on_message`` as separate tasks.
    Every handler re-reads the session from the registry after each await:
    a tombstoned session must not be touched again.
    """

    def __init__(
        self,
        registry: SessionRegistry,
        transport_factory: TransportFactory,
        auth_store: AuthStore,
        config: Optional[SupervisorConfig] = None,
        scheduler: Optional[Scheduler] = None,
        metrics: Optional[Metrics] = None,
        on_message: Optional[MessageHandler] = None,
        clock: Callable[[], float] = time.time,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.registry = registry
        self.transport_factory = transport_factory
        self.auth_store = auth_store
        self.config = config or SupervisorConfig()
        self.scheduler = scheduler or AsyncioScheduler()
        self.metrics = metrics or Metrics()
        self.on_message = on_message
        self.clock = clock
        self._rng = rng or random.Random()
        self._queue: "asyncio.Queue[_Envelope]" = asyncio.Queue()
        self._loops: List["asyncio.Task[None]"] = []
        self._tasks: Set["asyncio.Task[None]"] = set()

    # ---- event intake -------------------------------------------------

    def _sink(self, session_id: str, generation: int) -> EventSink:
        def sink(event: TransportEvent) -> None:
            self.post_event(session_id, generation, event)

        return sink

    def post_event(self, session_id: str, generation: int, event: TransportEvent) -> None:
        self._queue.put_nowait(_Envelope(session_id, generation, event))

    async def run(self) -> None:
        while True:
            envelope = await self._queue.get()
            try:
                await self.handle_event(envelope.session_id, envelope.generation, envelope.event)
            finally:
                self._queue.task_done()

    async def drain(self) -> None:
        """Applies every queued event; used when the run task is not started."""
        while not self._queue.empty():
            envelope = self._queue.get_nowait()
            try:
                await self.handle_event(envelope.session_id, envelope.generation, envelope.event)
            finally:
                self._queue.task_done()

    async def handle_event(self, session_id: str, generation: int, event: TransportEvent) -> None:
        session = self.registry.get(session_id)
        if session is None:
            log.debug("Ignoring %s for unknown or deleted session %s", type(event).__name__, session_id)
            return
        if generation != session.generation:
            log.debug("Ignoring %s from superseded connection of %s", type(event).__name__, session_id)
            return
        try:
            if isinstance(event, QrEvent):
                self._on_qr(session, event)
            elif isinstance(event, OpenEvent):
                await self._on_open(session)
            elif isinstance(event, CloseEvent):
                self._on_close(session, event)
            elif isinstance(event, MessageEvent):
                self._spawn(self._dispatch_message(session_id, event), f"message-{session_id}")
            elif isinstance(event, DecryptionFailedEvent):
                self._spawn(
                    self.on_decryption_failed(session_id, event.contact_id, event.error),
                    f"decrypt-{session_id}",
                )
            elif isinstance(event, TransportErrorEvent):
                log.warning("Transport error on %s: %s", session_id, event.error)
            else:
                log.warning("Unknown event %r for %s", event, session_id)
        except Exception:
            self.metrics.inc("errors")
            log.exception("Handler for %s on %s failed", type(event).__name__, session_id)

    def _spawn(self, coro: Awaitable[None], name: str) -> "asyncio.Task[None]":
        task = asyncio.ensure_future(coro)
        task.set_name(name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _dispatch_message(self, session_id: str, event: MessageEvent) -> None:
        if self.on_message is None:
            return
        try:
            await self.on_message(session_id, event)
        except Exception:
            self.metrics.inc("errors")
            log.exception("Message handler failed for %s", session_id)

    # ---- connect ------------------------------------------------------

    async def connect(self, session_id: str) -> Session:
        """Explicit (operator) connect: also lifts a previous logout."""
        session = self.registry.get(session_id) or self.registry.create(session_id)
        session.logged_out = False
        await self._open(session)
        return session

    async def _open(self, session: Session) -> None:
        session_id = session.session_id
        if session.deleted or session.status == SessionStatus.CONNECTED:
            return
        self._cancel_qr_timer(session)
        # This attempt supersedes any pending backoff or QR retry.
        self._cancel_reconnect_timer(session)
        session.reconnecting = False
        self._stop_heartbeat(session)
        session.generation += 1
        generation = session.generation
        old = session.transport
        session.transport = None
        if old is not None:
            await self._close_quietly(session_id, old)
            if self.registry.get(session_id) is not session:
                return
        session.qr_payload = None
        self.registry.set_status(session_id, SessionStatus.CONNECTING)
        log.info("Connecting %s (attempt %d)", session_id, session.reconnect_attempts)

        try:
            transport = await self.transport_factory(
                session_id, self.auth_store.path_for(session_id), self._sink(session_id, generation)
            )
        except Exception as e:
            log.error("Connect failed for %s: %s", session_id, e)
            if self.registry.get(session_id) is not session or session.generation != generation:
                return
            self.metrics.inc("errors")
            self.registry.set_status(session_id, SessionStatus.ERROR)
            self.schedule_reconnect(session_id)
            return

        if self.registry.get(session_id) is not session or session.generation != generation:
            await self._close_quietly(session_id, transport)
            return
        session.transport = transport
        if session.status == SessionStatus.CONNECTING and not session.qr_payload:
            session.qr_timer = self.scheduler.schedule_after(
                self.config.qr_timeout_sec,
                lambda: self._qr_timeout(session_id, generation),
                name=f"qr-timeout-{session_id}",
            )

    async def _qr_timeout(self, session_id: str, generation: int) -> None:
        session = self.registry.get(session_id)
        if session is None or session.generation != generation:
            return
        session.qr_timer = None
        if session.status != SessionStatus.CONNECTING or session.qr_payload:
            return
        log.warning("No QR or open event for %s within %ss, retrying", session_id, self.config.qr_timeout_sec)
        self.registry.set_status(session_id, SessionStatus.DISCONNECTED)
        session.reconnecting = True
        self._cancel_reconnect_timer(session)
        session.reconnect_timer = self.scheduler.schedule_after(
            self.config.qr_retry_delay_sec,
            lambda: self._reconnect(session_id),
            name=f"qr-retry-{session_id}",
        )

    # ---- lifecycle events ---------------------------------------------

    def _on_qr(self, session: Session, event: QrEvent) -> None:
        self._cancel_qr_timer(session)
        session.qr_payload = render_qr(event.payload)
        session.updated_at = self.clock()
        log.info("QR code generated for %s", session.session_id)

    async def _on_open(self, session: Session) -> None:
        session_id = session.session_id
        generation = session.generation
        self._cancel_qr_timer(session)
        self._cancel_reconnect_timer(session)
        session.reconnecting = False
        session.logged_out = False
        session.qr_payload = None
        session.reconnect_attempts = 0
        session.heartbeat_failures = 0
        session.last_heartbeat_at = self.clock()
        self.registry.set_status(session_id, SessionStatus.CONNECTED)
        log.info("Session %s connected", session_id)
        self._start_heartbeat(session)

        groups = []
        transport = session.transport
        if transport is not None:
            try:
                groups = await transport.fetch_groups()
            except Exception as e:
                log.warning("Could not fetch groups for %s: %s", session_id, e)
                groups = []
        if self.registry.get(session_id) is not session or session.generation != generation:
            return
        session.groups = list(groups or [])
        log.info("Session %s is in %d groups", session_id, len(session.groups))

    def _on_close(self, session: Session, event: CloseEvent) -> None:
        session_id = session.session_id
        self._cancel_qr_timer(session)
        self._stop_heartbeat(session)
        session.qr_payload = None
        self.registry.set_status(session_id, SessionStatus.DISCONNECTED)
        if DisconnectReason.is_terminal(event.reason_code):
            log.warning("Session %s logged out, waiting for operator", session_id)
            session.logged_out = True
            session.reconnecting = False
            self._cancel_reconnect_timer(session)
            transport = session.transport
            session.transport = None
            if transport is not None:
                self._spawn(self._close_quietly(session_id, transport), f"close-{session_id}")
            return
        log.info("Session %s closed (reason %s)", session_id, event.reason_code)
        self.schedule_reconnect(session_id)

    # ---- reconnect ----------------------------------------------------

    def schedule_reconnect(self, session_id: str) -> bool:
        session = self.registry.get(session_id)
        if session is None or session.reconnecting or session.logged_out:
            return False
        session.reconnecting = True
        session.reconnect_attempts += 1
        jitter = self._rng.uniform(0, self.config.backoff_jitter_sec) if self.config.backoff_jitter_sec > 0 else 0.0
        delay = compute_backoff_delay(
            session.reconnect_attempts,
            base=self.config.backoff_base_sec,
            cap=self.config.backoff_cap_sec,
            factor=self.config.backoff_factor,
            jitter=jitter,
        )
        log.info("Reconnecting %s in %.1fs (attempt %d)", session_id, delay, session.reconnect_attempts)
        self.metrics.inc("reconnects")
        session.reconnect_timer = self.scheduler.schedule_after(
            delay, lambda: self._reconnect(session_id), name=f"reconnect-{session_id}"
        )
        return True

    async def _reconnect(self, session_id: str) -> None:
        session = self.registry.get(session_id)
        if session is None:
            return
        session.reconnecting = False
        session.reconnect_timer = None
        if session.status in (SessionStatus.CONNECTED, SessionStatus.CONNECTING) or session.logged_out:
            return
        await self._open(session)

    # ---- heartbeat ----------------------------------------------------

    def _start_heartbeat(self, session: Session) -> None:
        self._stop_heartbeat(session)
        session.heartbeat_task = self._spawn(
            self._heartbeat_loop(session.session_id, session.generation), f"heartbeat-{session.session_id}"
        )

    def _stop_heartbeat(self, session: Session) -> None:
        task = session.heartbeat_task
        session.heartbeat_task = None
        if task is None or task.done():
            return
        try:
            current = asyncio.current_task()
        except RuntimeError:
            current = None
        if task is not current:
            task.cancel()

    async def _heartbeat_loop(self, session_id: str, generation: int) -> None:
        while True:
            await asyncio.sleep(self.config.heartbeat_interval_sec)
            if not await self.heartbeat_once(session_id, generation):
                return

    async def heartbeat_once(self, session_id: str, generation: Optional[int] = None) -> bool:
        """One liveness probe. Returns False once the loop should stop."""
        session = self.registry.get(session_id)
        if session is None or session.status != SessionStatus.CONNECTED:
            return False
        if generation is not None and generation != session.generation:
            return False
        try:
            if session.transport is None:
                raise TransportError("no transport handle")
            await session.transport.send_presence("available")
        except Exception as e:
            if self.registry.get(session_id) is not session or session.status != SessionStatus.CONNECTED:
                return False
            session.heartbeat_failures += 1
            log.warning(
                "Heartbeat failed for %s (%d/%d): %s",
                session_id,
                session.heartbeat_failures,
                self.config.heartbeat_max_failures,
                e,
            )
            if session.heartbeat_failures >= self.config.heartbeat_max_failures:
                log.error("Too many heartbeat failures for %s, forcing reconnect", session_id)
                self._force_disconnect(session)
                return False
            return True
        if self.registry.get(session_id) is not session:
            return False
        session.heartbeat_failures = 0
        session.last_heartbeat_at = self.clock()
        return True

    def _force_disconnect(self, session: Session) -> None:
        session_id = session.session_id
        self._stop_heartbeat(session)
        # Late events from the dropped connection must not resurrect it.
        session.generation += 1
        transport = session.transport
        session.transport = None
        if transport is not None:
            self._spawn(self._close_quietly(session_id, transport), f"close-{session_id}")
        session.qr_payload = None
        self.registry.set_status(session_id, SessionStatus.DISCONNECTED)
        self.schedule_reconnect(session_id)

    def check_stale_heartbeats(self) -> List[str]:
        now = self.clock()
        forced = []
        for session in self.registry.all():
            if session.status != SessionStatus.CONNECTED or session.last_heartbeat_at is None:
                continue
            age = now - session.last_heartbeat_at
            if age > self.config.heartbeat_stale_sec:
                log.error("No heartbeat from %s for %ds, forcing reconnect", session.session_id, int(age))
                self._force_disconnect(session)
                forced.append(session.session_id)
            elif age > self.config.heartbeat_warn_sec:
                log.warning("Heartbeat of %s is %ds old", session.session_id, int(age))
        return forced

    def recovery_sweep(self) -> List[str]:
        kicked = []
        for session in self.registry.all():
            if session.status != SessionStatus.DISCONNECTED:
                continue
            if session.reconnecting or session.logged_out:
                continue
            if self.schedule_reconnect(session.session_id):
                kicked.append(session.session_id)
        if kicked:
            log.info("Auto-recovery scheduled reconnect for %s", kicked)
        return kicked

    # ---- decryption failures ------------------------------------------

    async def on_decryption_failed(self, session_id: str, contact_id: str, error: str = "") -> bool:
        """Counts the failure and repairs the contact's session. Returns True if a repair ran."""
        session = self.registry.get(session_id)
        if session is None:
            return False
        attempt = session.decryption_attempts.get(contact_id)
        if attempt is None:
            attempt = DecryptionAttempt()
            session.decryption_attempts[contact_id] = attempt
        limit = self.config.decryption_max_attempts
        if attempt.count >= limit:
            log.info("Decryption for %s on %s already given up", contact_id, session_id)
            return False
        attempt.count += 1
        attempt.last_at = self.clock()
        if attempt.count >= limit:
            log.warning("Max decryption attempts reached for %s on %s, giving up", contact_id, session_id)
            return False
        log.warning(
            "Decryption failed for %s on %s (%d/%d): %s", contact_id, session_id, attempt.count, limit, error
        )
        return await self.repair_contact(session_id, contact_id)

    async def repair_contact(self, session_id: str, contact_id: str) -> bool:
        session = self.registry.get(session_id)
        transport = session.transport if session is not None else None
        if transport is None:
            return False
        try:
            await transport.clear_session_data(contact_id)
            log.info("Session data cleared for %s", contact_id)
        except Exception as e:
            log.warning("Failed to clear session data for %s: %s", contact_id, e)

        retries = max(1, self.config.prekey_retries)
        for attempt in range(1, retries + 1):
            if self.registry.get(session_id) is not session:
                return False
            try:
                await transport.request_fresh_keys(contact_id)
                log.info("Fresh keys requested for %s", contact_id)
                return True
            except Exception as e:
                log.warning("Key request failed for %s (%d/%d): %s", contact_id, attempt, retries, e)
                if attempt < retries:
                    await asyncio.sleep(self.config.prekey_retry_delay_sec)
        log.error("Could not repair session for %s on %s", contact_id, session_id)
        return False

    def purge_decryption_attempts(self) -> int:
        cutoff = self.clock() - self.config.decryption_stale_sec
        purged = 0
        for session in self.registry.all():
            for contact_id, attempt in list(session.decryption_attempts.items()):
                if attempt.last_at < cutoff:
                    del session.decryption_attempts[contact_id]
                    purged += 1
        if purged:
            log.info("Purged %d stale decryption counters", purged)
        return purged

    async def cleanup_contact(self, session_id: str, contact_id: str) -> bool:
        session = self.registry.get(session_id)
        if session is None:
            return False
        log.info("Cleaning up contact %s in %s", contact_id, session_id)
        session.decryption_attempts.pop(contact_id, None)
        return await self.repair_contact(session_id, contact_id)

    # ---- teardown -----------------------------------------------------

    async def disconnect(self, session_id: str) -> bool:
        """Logs the session out but keeps its entry; it stays down until connected again."""
        session = self.registry.get(session_id)
        if session is None:
            return False
        self._detach(session)
        transport = session.transport
        session.transport = None
        if transport is not None:
            try:
                await transport.logout()
            except Exception as e:
                log.warning("Logout failed for %s: %s", session_id, e)
        if self.registry.get(session_id) is not session:
            return True
        session.logged_out = True
        session.qr_payload = None
        self.registry.set_status(session_id, SessionStatus.DISCONNECTED)
        return True

    async def disconnect_and_delete(self, session_id: str) -> bool:
        session = self.registry.get(session_id, include_deleted=True)
        if session is None:
            return False
        self.registry.mark_deleted(session_id)
        self._detach(session)
        transport = session.transport
        session.transport = None
        if transport is not None:
            try:
                await transport.logout()
            except Exception as e:
                log.warning("Logout failed for %s: %s", session_id, e)
        self.auth_store.erase(session_id)
        self.registry.delete(session_id)
        log.info("Session %s disconnected and deleted", session_id)
        return True

    def _detach(self, session: Session) -> None:
        self._cancel_qr_timer(session)
        self._cancel_reconnect_timer(session)
        self._stop_heartbeat(session)
        session.reconnecting = False
        session.generation += 1

    def _cancel_qr_timer(self, session: Session) -> None:
        timer = session.qr_timer
        session.qr_timer = None
        if timer is not None:
            timer.cancel()

    def _cancel_reconnect_timer(self, session: Session) -> None:
        timer = session.reconnect_timer
        session.reconnect_timer = None
        if timer is not None:
            timer.cancel()

    async def _close_quietly(self, session_id: str, transport: Transport) -> None:
        try:
            await transport.close()
        except Exception as e:
            log.debug("Closing transport of %s failed: %s", session_id, e)

    # ---- background loops ---------------------------------------------

    async def _every(self, interval: float, fn: Callable[[], object], name: str) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                fn()
            except Exception:
                log.exception("%s failed", name)

    def start(self) -> None:
        if self._loops:
            return
        cfg = self.config
        self._loops = [
            asyncio.create_task(self.run(), name="supervisor-events"),
            asyncio.create_task(
                self._every(cfg.monitor_interval_sec, self.check_stale_heartbeats, "heartbeat monitor"),
                name="supervisor-monitor",
            ),
            asyncio.create_task(
                self._every(cfg.recovery_interval_sec, self.recovery_sweep, "auto-recovery"),
                name="supervisor-recovery",
            ),
            asyncio.create_task(
                self._every(cfg.decryption_purge_interval_sec, self.purge_decryption_attempts, "decryption purge"),
                name="supervisor-purge",
            ),
        ]
        log.info("Supervisor started")

    async def stop(self) -> None:
        loops, self._loops = self._loops, []
        for task in loops:
            task.cancel()
        for session in list(self.registry.all()):
            self._detach(session)
            transport = session.transport
            session.transport = None
            if transport is not None:
                await self._close_quietly(session.session_id, transport)
        pending = [t for t in list(self._tasks) if not t.done()]
        for task in pending:
            task.cancel()
        if loops or pending:
            await asyncio.gather(*loops, *pending, return_exceptions=True)
        log.info("Supervisor stopped")
