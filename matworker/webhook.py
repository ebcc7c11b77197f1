"""Delivery of terminal job documents to caller-supplied webhook URLs."""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
import random
import time
from typing import Any, Dict, Optional

import httpx

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-Signature"


def build_signature(secret: str, body: bytes) -> str:
    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return f"sha256={digest}"


def send_webhook(
    webhook_url: str,
    payload: Dict[str, Any],
    secret: Optional[str] = None,
    max_attempts: int = 5,
    base_delay: float = 1.0,
    client: Optional[httpx.Client] = None,
) -> bool:
    """POST ``payload`` with exponential backoff; returns True once a 2xx is received.

    Blocking; the runner calls it through ``asyncio.to_thread``.
    """

    body = json.dumps(payload, separators=(",", ":"), ensure_ascii=False, default=str).encode("utf-8")
    headers = {"Content-Type": "application/json"}
    if secret:
        headers[SIGNATURE_HEADER] = build_signature(secret, body)
    job_id = payload.get("job_id")

    http = client or httpx.Client(timeout=10.0)
    try:
        for attempt in range(1, max_attempts + 1):
            try:
                response = http.post(webhook_url, content=body, headers=headers)
            except httpx.HTTPError as exc:
                logger.warning(
                    "webhook.attempt.error",
                    extra={"attempt": attempt, "job_id": job_id, "webhook_url": webhook_url, "error": str(exc)},
                )
            else:
                if 200 <= response.status_code < 300:
                    logger.info(
                        "webhook.delivered",
                        extra={"attempt": attempt, "job_id": job_id, "status_code": response.status_code},
                    )
                    return True
                logger.warning(
                    "webhook.attempt.non_2xx",
                    extra={
                        "attempt": attempt,
                        "job_id": job_id,
                        "status_code": response.status_code,
                        "body": response.text[:200] if response.text else "",
                    },
                )

            if attempt >= max_attempts:
                break
            delay = base_delay * (2 ** (attempt - 1))
            sleep_for = delay + random.uniform(0, delay * 0.25)
            logger.info(
                "webhook.retry",
                extra={"next_attempt": attempt + 1, "job_id": job_id, "sleep": round(sleep_for, 2)},
            )
            time.sleep(sleep_for)
    finally:
        if client is None:
            http.close()

    logger.error("webhook.failed", extra={"attempts": max_attempts, "job_id": job_id, "webhook_url": webhook_url})
    return False
