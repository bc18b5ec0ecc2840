"""
Scheduler Service

Runs the watchdog periodically inside the API process.

Single-leader election via Postgres advisory locks: only the instance that
acquires the lock executes the tick, other instances skip silently.
Controlled by SCHEDULER_ENABLED (default: true).
"""
from __future__ import annotations

import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from reelcast.settings import get_settings

logger = logging.getLogger("scheduler")

LOCK_WATCHDOG = 910_001


class SchedulerService:
    _instance: "SchedulerService | None" = None

    def __init__(self):
        self.scheduler = AsyncIOScheduler()
        self._session_factory: async_sessionmaker | None = None
        self._running = False

    @classmethod
    def get_instance(cls) -> "SchedulerService":
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    def configure(self, session_factory: async_sessionmaker):
        self._session_factory = session_factory

    def _get_session(self) -> AsyncSession:
        if self._session_factory is None:
            from reelcast.db import AsyncSessionLocal

            self._session_factory = AsyncSessionLocal
        return self._session_factory()

    async def _try_advisory_lock(self, session: AsyncSession, lock_key: int) -> bool:
        """Non-blocking Postgres advisory lock; other backends have a single instance."""
        if session.bind.dialect.name != "postgresql":
            return True
        result = await session.execute(text(f"SELECT pg_try_advisory_lock({lock_key})"))
        return bool(result.scalar())

    async def _release_advisory_lock(self, session: AsyncSession, lock_key: int):
        if session.bind.dialect.name != "postgresql":
            return
        await session.execute(text(f"SELECT pg_advisory_unlock({lock_key})"))

    def start(self):
        """Start the scheduler (respects SCHEDULER_ENABLED env)."""
        settings = get_settings()
        if not settings.scheduler_enabled:
            logger.info("Scheduler DISABLED by SCHEDULER_ENABLED=false, skipping start")
            return
        if self._running:
            return

        self.scheduler.add_job(
            self._run_watchdog,
            IntervalTrigger(minutes=settings.watchdog_interval_minutes),
            id="watchdog",
            name="Close stuck video ideas",
            replace_existing=True,
        )
        self.scheduler.start()
        self._running = True
        logger.info(f"Scheduler started (watchdog every {settings.watchdog_interval_minutes}m)")

    def stop(self):
        if not self._running:
            return
        self.scheduler.shutdown(wait=False)
        self._running = False
        logger.info("Scheduler stopped")

    def is_running(self) -> bool:
        return self._running

    async def _run_watchdog(self):
        async with self._get_session() as session:
            acquired = await self._try_advisory_lock(session, LOCK_WATCHDOG)
            if not acquired:
                logger.debug("[watchdog] Advisory lock not acquired, another instance is leader, skipping tick")
                return None
            try:
                from reelcast.services.watchdog_service import run_watchdog

                return await run_watchdog(session)
            finally:
                await self._release_advisory_lock(session, LOCK_WATCHDOG)
