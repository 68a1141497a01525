import asyncio
import logging
import uuid
from datetime import timedelta
from typing import Awaitable, Callable, Dict, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from starlette.types import Receive, Scope, Send

from oauth_bridge.common.exceptions import PersistenceFailure
from oauth_bridge.common.utils import expires_in, utcnow
from oauth_bridge.core.config import Settings, settings as default_settings
from oauth_bridge.repositories.session_repo import (
    delete_sessions_by_ids,
    find_expired_session_ids,
    insert_session,
    mark_session_terminated,
)
from oauth_bridge.services.sessions.registry import ActiveTransport, ActiveTransportRegistry
from oauth_bridge.services.sessions.transport import (
    BufferedResponse,
    SessionContext,
    Transport,
    TransportFactory,
)

logger = logging.getLogger(__name__)

OAuthCleanup = Callable[[], Awaitable[Dict[str, int]]]


class SessionManager:
    """
    Lifecycle of protocol sessions.

    The in-memory registry is authoritative for routing; the ``sessions``
    table records that a session existed and when it ended. A durable row
    without a live in-memory entry (e.g. after a restart) is a dead session:
    there is no resume path, clients must re-initialize. Such rows are
    removed by ``cleanup_expired_data``.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        transport_factory: TransportFactory,
        oauth_cleanup: Optional[OAuthCleanup] = None,
        registry: Optional[ActiveTransportRegistry] = None,
        settings: Settings = default_settings,
    ):
        self._session_factory = session_factory
        self._transport_factory = transport_factory
        self._oauth_cleanup = oauth_cleanup
        self._registry = registry or ActiveTransportRegistry()
        self._settings = settings

        self._cleanup_task: Optional[asyncio.Task] = None
        self._reap_task: Optional[asyncio.Task] = None

    # ------------------------------------------------------------------
    # Session interface
    # ------------------------------------------------------------------

    async def create_session(self, user_id: str, scope: Scope, receive: Receive, send: Send) -> Optional[Transport]:
        """
        Open a session for ``user_id`` by running the client's initialize
        request through a fresh transport.

        The session is persisted and cached only once the protocol confirms
        initialization. A rejected initialize is answered without a session
        id and its transport is discarded; None is returned in that case.
        """
        context = SessionContext(session_id=str(uuid.uuid4()), user_id=user_id)
        transport = self._transport_factory(context)
        transport.on_closed = self._transport_closed

        await transport.start()

        response = BufferedResponse()
        try:
            await transport.handle_request(scope, receive, response)
        except Exception:
            await self._close_quietly(context.session_id, transport)
            raise

        if not response.initialized:
            logger.info(
                f"[SESSION] Initialize rejected (HTTP {response.status}), discarding session {context.session_id}"
            )
            await self._close_quietly(context.session_id, transport)
            await response.replay(send, drop_session_header=True)
            return None

        try:
            async with self._session_factory() as db:
                await insert_session(
                    db,
                    session_id=context.session_id,
                    user_id=user_id,
                    expires_at=expires_in(self._settings.SESSION_TTL),
                )
        except SQLAlchemyError as exc:
            logger.error(
                f"[SESSION] Session initialization failed, closing transport: {context.session_id}",
                exc_info=exc,
            )
            await self._close_quietly(context.session_id, transport)
            raise PersistenceFailure("Failed to initialize session") from exc

        active_count = await self._registry.put(ActiveTransport(transport=transport, context=context))

        if active_count > self._settings.MAX_ACTIVE_TRANSPORTS_WARN:
            logger.warning(
                f"[SESSION] Active transport count {active_count} exceeds "
                f"threshold {self._settings.MAX_ACTIVE_TRANSPORTS_WARN}"
            )

        logger.info(f"[SESSION] Session {context.session_id} created for user {user_id} (active: {active_count})")
        await response.replay(send)
        return transport

    async def retrieve_session(self, session_id: str) -> Optional[ActiveTransport]:
        return await self._registry.touch(session_id)

    async def terminate_session(self, session_id: str) -> None:
        entry = await self._registry.get(session_id)
        if entry:
            await self._close_quietly(session_id, entry.transport)

        try:
            await self._persist_termination(session_id)
        finally:
            await self._registry.pop(session_id)

        logger.info(f"[SESSION] Session {session_id} terminated")

    # ------------------------------------------------------------------
    # Background work
    # ------------------------------------------------------------------

    async def reap_idle_transports(self) -> int:
        idle = await self._registry.pop_idle(self._settings.IDLE_TRANSPORT_TTL)
        if not idle:
            return 0

        async def reap(entry: ActiveTransport) -> None:
            await self._close_quietly(entry.session_id, entry.transport)
            try:
                await self._persist_termination(entry.session_id)
            except PersistenceFailure:
                pass  # logged in _persist_termination, the expiry sweep reconciles the row

        await asyncio.gather(*(reap(entry) for entry in idle))

        logger.info(f"[CLEANUP] Reaped {len(idle)} idle transports (remaining: {await self._registry.count()})")
        return len(idle)

    async def cleanup_expired_data(self) -> None:
        try:
            cutoff = utcnow() - timedelta(seconds=self._settings.STALE_TERMINATION_CUTOFF)
            async with self._session_factory() as db:
                expired_ids = await find_expired_session_ids(db, stale_termination_cutoff=cutoff)

            if expired_ids:
                async def evict(session_id: str) -> None:
                    entry = await self._registry.pop(session_id)
                    if entry:
                        await self._close_quietly(session_id, entry.transport)

                await asyncio.gather(*(evict(session_id) for session_id in expired_ids))

                async with self._session_factory() as db:
                    await delete_sessions_by_ids(db, expired_ids)

                logger.info(f"[CLEANUP] Cleaned up {len(expired_ids)} expired sessions")

            if self._oauth_cleanup:
                counts = await self._oauth_cleanup()
                if sum(counts.values()) > 0:
                    logger.info(f"[CLEANUP] Cleaned up expired OAuth data: {counts}")
        except Exception:
            logger.exception("[CLEANUP] Error during data cleanup")

    def start(self) -> None:
        if self._cleanup_task or self._reap_task:
            logger.warning("[SESSION] Cleanup scheduler already running")
            return

        self._cleanup_task = asyncio.create_task(
            self._every(self._settings.SESSION_CLEANUP_INTERVAL, self.cleanup_expired_data)
        )
        self._reap_task = asyncio.create_task(
            self._every(self._settings.IDLE_TRANSPORT_REAP_INTERVAL, self.reap_idle_transports)
        )

        logger.info(
            f"[SESSION] Schedulers started (cleanup every {self._settings.SESSION_CLEANUP_INTERVAL}s, "
            f"reap every {self._settings.IDLE_TRANSPORT_REAP_INTERVAL}s, "
            f"idle ttl {self._settings.IDLE_TRANSPORT_TTL}s)"
        )

    async def stop(self) -> None:
        tasks = [task for task in (self._cleanup_task, self._reap_task) if task]
        self._cleanup_task = None
        self._reap_task = None

        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    async def shutdown(self) -> None:
        logger.info("[SHUTDOWN] Shutting down session manager")
        await self.stop()

        entries = await self._registry.pop_all()

        async def close(entry: ActiveTransport) -> None:
            await entry.transport.close()
            await self._persist_termination(entry.session_id)

        results = await asyncio.gather(
            *(close(entry) for entry in entries),
            return_exceptions=True,
        )

        for entry, result in zip(entries, results):
            if isinstance(result, BaseException):
                logger.error(
                    f"[SHUTDOWN] Error closing session {entry.session_id}",
                    exc_info=result,
                )

        logger.info(f"[SHUTDOWN] Session manager shutdown complete ({len(entries)} sessions closed)")

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _transport_closed(self, session_id: str) -> None:
        """A transport died on its own: evict it and tombstone the row."""
        entry = await self._registry.pop(session_id)
        if entry is None:
            return

        logger.warning(f"[SESSION] Transport for session {session_id} closed unexpectedly, evicting")
        try:
            await self._persist_termination(session_id)
        except PersistenceFailure:
            pass  # logged in _persist_termination, the expiry sweep reconciles the row

    async def _persist_termination(self, session_id: str) -> None:
        try:
            async with self._session_factory() as db:
                await mark_session_terminated(db, session_id)
        except SQLAlchemyError as exc:
            logger.error(f"[SESSION] Failed to persist termination of {session_id}", exc_info=exc)
            raise PersistenceFailure("Failed to terminate session") from exc

    @staticmethod
    async def _close_quietly(session_id: str, transport: Transport) -> None:
        try:
            await transport.close()
        except Exception:
            logger.exception(f"[SESSION] Error closing transport {session_id}")

    @staticmethod
    async def _every(interval: float, job: Callable[[], Awaitable[object]]) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                await job()
            except Exception:
                logger.exception("[SESSION] Periodic job failed")
