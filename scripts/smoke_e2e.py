#!/usr/bin/env python3
"""
Smoke E2E test: walks one video idea through the workflow against a running API.

No platform tokens required: the idea is driven by a signed pipeline callback
and ends rejected, and approval is checked to fail on missing connections.

Env vars:
  BASE_URL         (default http://localhost:8000)
  ADMIN_PASSWORD   (required, issues the smoke user's token)
  WEBHOOK_SECRET   (optional, must match the server's)
"""
from __future__ import annotations

import hashlib
import hmac
import json
import os
import sys
import time
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

BASE_URL = os.environ.get("BASE_URL", "http://localhost:8000").rstrip("/")
ADMIN_PASSWORD = os.environ.get("ADMIN_PASSWORD", "")
WEBHOOK_SECRET = os.environ.get("WEBHOOK_SECRET", "")

SMOKE_TAG = f"smoke_{int(time.time())}"

# ── Helpers ──────────────────────────────────────────────────

class SmokeError(Exception):
    pass


def _req(
    method: str,
    path: str,
    body: dict | None = None,
    *,
    token: str | None = None,
    expect: tuple[int, ...] = (200, 201, 202),
    signed: bool = False,
) -> tuple[int, dict]:
    url = f"{BASE_URL}{path}"
    data = json.dumps(body).encode() if body is not None else None
    headers = {"Content-Type": "application/json"}
    if token:
        headers["Authorization"] = f"Bearer {token}"
    if signed and WEBHOOK_SECRET and data is not None:
        digest = hmac.new(WEBHOOK_SECRET.encode(), data, hashlib.sha256).hexdigest()
        headers["X-Webhook-Signature"] = f"sha256={digest}"
    req = Request(url, data=data, headers=headers, method=method)
    try:
        with urlopen(req, timeout=30) as resp:
            raw = resp.read().decode()
            return resp.status, (json.loads(raw) if raw else {})
    except HTTPError as e:
        raw = e.read().decode()[:500]
        if e.code in expect:
            return e.code, (json.loads(raw) if raw else {})
        raise SmokeError(f"{method} {path} → {e.code}: {raw}")
    except URLError as e:
        raise SmokeError(f"{method} {path} → URLError: {e}")


def step(name: str):
    print(f"\n{'='*60}")
    print(f"  STEP: {name}")
    print(f"{'='*60}")


def ok(msg: str):
    print(f"  ✅ {msg}")


def fail(msg: str):
    print(f"  ❌ {msg}")
    raise SmokeError(msg)


# ── Steps ────────────────────────────────────────────────────

def step1_health():
    step("1. Health check")
    _, data = _req("GET", "/api/ops/health")
    if data.get("db") != "ok":
        fail(f"DB not healthy: {data}")
    ok(f"DB ok, ideas by state: {data.get('counts')}")


def step2_issue_token() -> str:
    step("2. Issue API token for smoke user")
    _, data = _req("POST", "/api/auth/tokens", {
        "admin_password": ADMIN_PASSWORD,
        "email": f"{SMOKE_TAG}@example.com",
        "subscription_tier": "free",
        "credits": 1,
    })
    ok(f"User #{data['user_id']} token issued")
    return data["token"]


def step3_submit(token: str) -> int:
    step("3. Submit video idea")
    code, data = _req("POST", "/api/video-ideas", {
        "idea_text": f"Smoke idea {SMOKE_TAG}",
        "selected_platforms": ["youtube"],
    }, token=token, expect=(201, 502))
    if code == 502:
        ok(f"Generation pipeline unavailable (expected without a webhook URL): {data.get('detail')}")
        return int(data["detail"]["video_idea_id"])
    ok(f"Idea #{data['id']} → {data['state']}")
    return int(data["id"])


def step4_video_ready(idea_id: int):
    step("4. Pipeline callback: video-ready")
    code, data = _req("POST", "/api/webhooks/video-ready", {
        "video_idea_id": idea_id,
        "idea": f"Smoke idea {SMOKE_TAG}",
        "caption": "Smoke caption",
        "final_output": "https://example.com/smoke.mp4",
        "youtube_title": "Smoke title",
    }, signed=True, expect=(200, 409))
    if code == 409:
        ok(f"Idea already past generation ({data['detail']['current']}), skipping")
        return False
    if data.get("state") != "ready_for_approval":
        fail(f"Unexpected state: {data}")
    ok(f"Idea #{idea_id} ready for approval (webhook {data['webhook_id']})")
    return True


def step5_approve_without_connection(token: str, idea_id: int):
    step("5. Approve without a YouTube connection → rejected up front")
    code, data = _req("POST", f"/api/video-ideas/{idea_id}/approve", token=token, expect=(400,))
    if code != 400 or data["detail"]["error"] != "missing_connection":
        fail(f"Expected missing_connection, got {code}: {data}")
    ok("missing_connection reported, idea unchanged")


def step6_reject(token: str, idea_id: int):
    step("6. Reject")
    _, data = _req("POST", f"/api/video-ideas/{idea_id}/reject", {"reason": "smoke"}, token=token)
    if data["state"] != "rejected" or data["approval_status"] != "rejected":
        fail(f"Unexpected state after reject: {data}")
    ok(f"Idea #{idea_id} rejected")


def main() -> int:
    if not ADMIN_PASSWORD:
        print("ADMIN_PASSWORD is required")
        return 2
    print(f"Smoke E2E against {BASE_URL} ({SMOKE_TAG})")
    try:
        step1_health()
        token = step2_issue_token()
        idea_id = step3_submit(token)
        if step4_video_ready(idea_id):
            step5_approve_without_connection(token, idea_id)
            step6_reject(token, idea_id)
    except SmokeError as e:
        print(f"\nSMOKE FAILED: {e}")
        return 1
    print("\nSMOKE PASSED")
    return 0


if __name__ == "__main__":
    sys.exit(main())
