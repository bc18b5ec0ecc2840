"""
Subscription tier gate over the static platform capability table.

Client-side filtering is advisory; can_access() is re-checked on the server
at submission and at publish time.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable

from reelcast.models import Platform, SubscriptionTier


@dataclass(frozen=True)
class PlatformCapability:
    platform: Platform
    min_tier: SubscriptionTier
    adapter: str | None = None  # key in the publisher registry; None = not publishable yet
    refreshable: bool = False  # supports refresh_token grants


CAPABILITIES: dict[Platform, PlatformCapability] = {
    Platform.youtube: PlatformCapability(Platform.youtube, SubscriptionTier.free, "youtube", refreshable=True),
    Platform.instagram: PlatformCapability(Platform.instagram, SubscriptionTier.premium, "instagram"),
    Platform.tiktok: PlatformCapability(Platform.tiktok, SubscriptionTier.premium, "tiktok"),
    Platform.threads: PlatformCapability(Platform.threads, SubscriptionTier.premium),
    Platform.facebook: PlatformCapability(Platform.facebook, SubscriptionTier.pro),
    Platform.x: PlatformCapability(Platform.x, SubscriptionTier.pro),
    Platform.linkedin: PlatformCapability(Platform.linkedin, SubscriptionTier.pro),
}


def _coerce_tier(tier: SubscriptionTier | str) -> SubscriptionTier:
    return tier if isinstance(tier, SubscriptionTier) else SubscriptionTier((tier or "").strip().lower())


def _coerce_platform(platform: Platform | str) -> Platform:
    return platform if isinstance(platform, Platform) else Platform.parse(platform)


def capability(platform: Platform | str) -> PlatformCapability:
    return CAPABILITIES[_coerce_platform(platform)]


def can_access(tier: SubscriptionTier | str, platform: Platform | str) -> bool:
    """free platforms: any tier; premium: premium or pro; pro: pro only."""
    return _coerce_tier(tier).rank >= capability(platform).min_tier.rank


def blocked_platforms(tier: SubscriptionTier | str, platforms: Iterable[Platform | str]) -> list[Platform]:
    return [_coerce_platform(p) for p in platforms if not can_access(tier, p)]


def is_publishable(platform: Platform | str) -> bool:
    return capability(platform).adapter is not None


def is_refreshable(platform: Platform | str) -> bool:
    return capability(platform).refreshable
