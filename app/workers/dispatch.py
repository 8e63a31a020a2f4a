"""Celery task delivering the publish webhook at a thread's fire time."""
import json

import httpx
import structlog

from app.core.celery_app import celery_app
from app.core.config import settings
from app.core.security import sign_webhook_body

log = structlog.get_logger()


@celery_app.task(
    bind=True,
    autoretry_for=(httpx.HTTPError,),
    retry_backoff=True,
    retry_kwargs={"max_retries": 5},
)
def deliver_publish_webhook(self, url: str, body: dict, dispatch_id: str) -> int:
    """POST the signed body; 5xx responses and network errors are retried.

    A 4xx reply is final: it is logged as a failure and its status returned.
    """
    raw = json.dumps(body).encode()
    headers = {"Content-Type": "application/json", "Upstash-Message-Id": dispatch_id}
    if settings.QSTASH_CURRENT_SIGNING_KEY:
        headers["Upstash-Signature"] = sign_webhook_body(raw, url, settings.QSTASH_CURRENT_SIGNING_KEY)
    response = httpx.post(url, content=raw, headers=headers, timeout=settings.TWITTER_HTTP_TIMEOUT)
    if response.status_code >= 500:
        response.raise_for_status()
    if response.status_code >= 400:
        log.error(
            "webhook_rejected", dispatch_id=dispatch_id, status=response.status_code, attempt=self.request.retries
        )
        return response.status_code
    log.info("webhook_delivered", dispatch_id=dispatch_id, status=response.status_code, attempt=self.request.retries)
    return response.status_code
