"""
Smoke test against a running instance.

- GET /health
- POST /api/webhooks/sites twice with the same signed body
  (first → duplicate=false, second → duplicate=true)

Requires SITE_WEBHOOK_SECRET to match the server. Exits non-zero on any
unexpected response.
"""

from __future__ import annotations

import json
import os
import sys
import uuid
from pathlib import Path

import httpx

# לאפשר הרצה מכל תיקיה (למשל `python scripts/smoke_webhooks.py` ב-shell של השרת)
REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from app.core.logging import get_logger, setup_logging  # noqa: E402
from app.core.signatures import compute_hex_signature  # noqa: E402


logger = get_logger(__name__)


def _base_url() -> str:
    port = os.environ.get("PORT", "8000")
    return os.environ.get("BASE_URL", f"http://127.0.0.1:{port}").rstrip("/")


def _timeout_seconds() -> float:
    return float(os.environ.get("SMOKE_TIMEOUT_SECONDS", "10"))


def _site_request(secret: str) -> tuple[bytes, dict[str, str]]:
    # גוף ייחודי לכל ריצה — אחרת הריצה הבאה תראה כפילות כבר בשליחה הראשונה
    body = json.dumps({"smoke_run": uuid.uuid4().hex, "post_id": 1}).encode()
    headers = {
        "Content-Type": "application/json",
        "X-Seology-Source": "smoke.seology.ai",
        "X-Seology-Topic": "smoke/ping",
        "X-Seology-Signature": "sha256=" + compute_hex_signature(body, secret),
    }
    return body, headers


def _check_status(resp: httpx.Response, expected_family: int = 2) -> None:
    family = resp.status_code // 100
    if family != expected_family:
        raise RuntimeError(
            f"Unexpected status {resp.status_code} for {resp.request.method} {resp.request.url}. "
            f"Body: {(resp.text or '')[:500]}"
        )


def _check_duplicate(resp: httpx.Response, expected: bool) -> None:
    _check_status(resp)
    duplicate = resp.json().get("duplicate")
    if duplicate is not expected:
        raise RuntimeError(f"Expected duplicate={expected}, got {duplicate}. Body: {resp.text[:500]}")


def main() -> None:
    setup_logging(level="INFO", json_format=False, app_name="seology-webhook-gate-smoke")

    secret = os.environ.get("SITE_WEBHOOK_SECRET", "")
    if not secret:
        logger.error("SITE_WEBHOOK_SECRET is required for the smoke test")
        sys.exit(1)

    base_url = _base_url()
    timeout = _timeout_seconds()

    logger.info("Starting smoke tests", extra_data={"base_url": base_url, "timeout_seconds": timeout})

    with httpx.Client(timeout=timeout) as client:
        resp = client.get(f"{base_url}/health")
        _check_status(resp)

        url = f"{base_url}/api/webhooks/sites"
        body, headers = _site_request(secret)

        logger.info("Posting site webhook", extra_data={"url": url})
        _check_duplicate(client.post(url, content=body, headers=headers), expected=False)

        logger.info("Re-posting the same site webhook", extra_data={"url": url})
        _check_duplicate(client.post(url, content=body, headers=headers), expected=True)

    logger.info("Smoke tests completed successfully")


if __name__ == "__main__":
    main()
