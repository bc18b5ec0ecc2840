"""
Operator alerts over Telegram for publish runs that did not fully succeed
and for video ideas the watchdog had to close.

Env:
  TELEGRAM_BOT_TOKEN, TELEGRAM_CHAT_ID (alerts are skipped when unset)

Each alert has a key (idea + outcome, or the set of closed ideas); the same
key is sent at most once per 15 minutes so a retried Celery task does not
page twice.
"""
from __future__ import annotations

import html
import logging
import time
from typing import Callable, Iterable

import httpx

from reelcast.models import WorkflowState
from reelcast.settings import get_settings

logger = logging.getLogger(__name__)

THROTTLE_SEC = 15 * 60
TELEGRAM_TEXT_LIMIT = 4000

_sent_at: dict[str, float] = {}

_OUTCOME_ICONS = {
    WorkflowState.partial_success: "🟡",
    WorkflowState.publish_failed: "🔴",
}


def _should_send(key: str) -> bool:
    now = time.monotonic()
    last = _sent_at.get(key)
    if last is not None and now - last < THROTTLE_SEC:
        return False
    _sent_at[key] = now
    return True


def format_publish_alert(video_idea_id: int, state: WorkflowState, errors: dict[str, str]) -> str:
    icon = _OUTCOME_ICONS.get(state, "🟢")
    lines = [f"{icon} <b>Video idea #{video_idea_id}: {state.value}</b>"]
    for platform, error in sorted(errors.items()):
        lines.append(f"• {html.escape(platform)}: {html.escape(str(error))[:300]}")
    return "\n".join(lines)


def format_watchdog_alert(items: list[dict]) -> str:
    lines = [f"🟡 <b>Watchdog closed {len(items)} stuck video idea(s)</b>"]
    for item in items[:10]:
        lines.append(
            f"• #{item['video_idea_id']} {html.escape(item['old_state'])} "
            f"-> {html.escape(item.get('new_state') or '?')} after {item['age_minutes']}m"
        )
    if len(items) > 10:
        lines.append(f"… and {len(items) - 10} more")
    return "\n".join(lines)


async def _send_telegram(text: str, client_factory: Callable[[], httpx.AsyncClient] | None = None) -> bool:
    settings = get_settings()
    token, chat_id = settings.telegram_bot_token, settings.telegram_chat_id
    if not token or not chat_id:
        logger.debug("[notify] Telegram not configured, skipping")
        return False
    url = f"https://api.telegram.org/bot{token}/sendMessage"
    client_factory = client_factory or (lambda: httpx.AsyncClient(timeout=10))
    try:
        async with client_factory() as client:
            r = await client.post(url, json={
                "chat_id": chat_id,
                "text": text[:TELEGRAM_TEXT_LIMIT],
                "parse_mode": "HTML",
                "disable_web_page_preview": True,
            })
            if r.status_code == 200:
                return True
            logger.warning(f"[notify] Telegram API {r.status_code}: {r.text[:200]}")
    except httpx.HTTPError as e:
        logger.warning(f"[notify] Telegram send failed: {type(e).__name__}")
    return False


async def notify_publish_outcome(
    video_idea_id: int,
    state: WorkflowState,
    errors: dict[str, str],
    *,
    client_factory: Callable[[], httpx.AsyncClient] | None = None,
) -> bool:
    """Alert on a publish run that ended partial_success or publish_failed."""
    if state == WorkflowState.published:
        return False
    if not _should_send(f"publish:{video_idea_id}:{state.value}"):
        logger.debug(f"[notify] throttled publish alert for idea {video_idea_id}")
        return False
    return await _send_telegram(format_publish_alert(video_idea_id, state, errors), client_factory)


async def notify_stuck_ideas(
    items: Iterable[dict],
    *,
    client_factory: Callable[[], httpx.AsyncClient] | None = None,
) -> bool:
    items = list(items)
    if not items:
        return False
    key = "watchdog:" + ",".join(str(it["video_idea_id"]) for it in sorted(items, key=lambda it: it["video_idea_id"]))
    if not _should_send(key):
        logger.debug("[notify] throttled watchdog alert")
        return False
    return await _send_telegram(format_watchdog_alert(items), client_factory)
