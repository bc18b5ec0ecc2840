"""
Celery tasks for publishing.

Main task: publish.video_idea runs the publish orchestrator in a
synchronous Celery worker using asyncio.run() with a fresh engine.
No autoretry: a failed upload is re-published only on user request.
"""
from __future__ import annotations

import asyncio
import logging

from reelcast.worker.celery_app import celery_app

logger = logging.getLogger(__name__)


async def _publish_async(video_idea_id: int, platforms: list[str] | None) -> dict:
    from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

    from reelcast.services.publish_orchestrator import run_publish
    from reelcast.settings import get_settings

    engine = create_async_engine(get_settings().async_database_url, echo=False)
    session_factory = async_sessionmaker(engine, expire_on_commit=False)
    try:
        return await run_publish(session_factory, video_idea_id, platforms)
    finally:
        await engine.dispose()


@celery_app.task(bind=True, name="publish.video_idea", queue="publish")
def publish_video_idea(self, video_idea_id: int, platforms: list[str] | None = None) -> dict:
    logger.info(f"[worker] Publishing idea {video_idea_id} (celery_id={self.request.id}, platforms={platforms})")
    try:
        result = asyncio.run(_publish_async(video_idea_id, platforms))
    except Exception as e:
        # The idea stays in `publishing`; the watchdog closes it out
        logger.error(f"[worker] Publish of idea {video_idea_id} failed: {e}")
        raise
    logger.info(f"[worker] Idea {video_idea_id} finished: {result.get('state')}")
    return result
