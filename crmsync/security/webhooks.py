"""Webhook validation helpers."""

from __future__ import annotations

import base64
import hashlib
import hmac
import time

from fastapi import HTTPException, Request

from ..config import settings

SIGNATURE_HEADER = "x-hubspot-signature-v3"
TIMESTAMP_HEADER = "x-hubspot-request-timestamp"


def _extract_token(request: Request) -> str:
    auth = request.headers.get("authorization", "")
    if auth.lower().startswith("bearer "):
        return auth[7:].strip()
    return request.headers.get("x-api-key", "").strip()


def expected_signature(secret: str, method: str, uri: str, body: bytes, timestamp: str) -> str:
    """HubSpot v3: base64(HMAC-SHA256(secret, method + uri + body + timestamp))."""
    message = f"{method.upper()}{uri}".encode("utf-8") + body + timestamp.encode("utf-8")
    digest = hmac.new(secret.encode("utf-8"), message, hashlib.sha256).digest()
    return base64.b64encode(digest).decode("utf-8")


def verify_upstream_webhook(request: Request, body: bytes) -> None:
    """Verify upstream webhook auth using the v3 signature or an API key."""
    signing_secret = settings.webhook_signing_secret.strip()
    api_key = settings.webhook_api_key.strip()

    if not signing_secret and not api_key:
        if settings.security_fail_closed:
            raise HTTPException(status_code=503, detail="Webhook authentication is not configured")
        return

    # Prefer HMAC verification when configured.
    if signing_secret:
        timestamp_raw = request.headers.get(TIMESTAMP_HEADER, "").strip()
        signature_raw = request.headers.get(SIGNATURE_HEADER, "").strip()
        if not timestamp_raw or not signature_raw:
            raise HTTPException(status_code=401, detail="Missing webhook signature headers")

        try:
            timestamp_ms = int(timestamp_raw)
        except ValueError as exc:
            raise HTTPException(status_code=401, detail="Invalid webhook timestamp") from exc

        now_ms = int(time.time() * 1000)
        if abs(now_ms - timestamp_ms) > settings.webhook_signature_ttl_seconds * 1000:
            raise HTTPException(status_code=401, detail="Webhook signature expired")

        expected = expected_signature(
            signing_secret, request.method, str(request.url), body, timestamp_raw
        )
        if not hmac.compare_digest(signature_raw, expected):
            raise HTTPException(status_code=401, detail="Invalid webhook signature")
        return

    provided = _extract_token(request)
    if not provided or not hmac.compare_digest(provided, api_key):
        raise HTTPException(status_code=401, detail="Invalid webhook API key")
