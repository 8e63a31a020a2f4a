"""Delayed-job dispatchers that call the publish webhook at a thread's fire time.

A dispatcher registers one future webhook delivery per scheduled thread and
hands back an opaque id used for cancellation. ``schedule`` either returns the
id or raises DispatchError; ``cancel`` returns False when there was nothing left
to cancel (already delivered or unknown) and raises DispatchError only when the
backend itself could not be reached.
"""
import asyncio
import json
import secrets
import time
import uuid
from datetime import datetime, timezone
from typing import Protocol
from uuid import UUID

import httpx
import structlog

from app.core.config import settings
from app.core.errors import DispatchError
from app.core.celery_app import celery_app
from app.workers.dispatch import deliver_publish_webhook

log = structlog.get_logger()

LOCAL_PREFIX = "local-"


def webhook_body(thread_id: UUID, user_id: UUID, account_id: UUID) -> dict:
    return {"threadId": str(thread_id), "userId": str(user_id), "accountId": str(account_id)}


def is_synthetic(dispatch_id: str) -> bool:
    return dispatch_id.startswith(LOCAL_PREFIX)


class Dispatcher(Protocol):
    async def schedule(self, *, thread_id: UUID, user_id: UUID, account_id: UUID, fire_at_unix: int) -> str:
        ...

    async def cancel(self, dispatch_id: str) -> bool:
        ...


class LocalDispatcher:
    """Records schedules without delivering anything (development, tests)."""

    async def schedule(self, *, thread_id: UUID, user_id: UUID, account_id: UUID, fire_at_unix: int) -> str:
        dispatch_id = f"{LOCAL_PREFIX}{int(time.time() * 1000)}-{secrets.token_hex(4)}"
        log.info(
            "dispatch_skipped_local",
            thread_id=str(thread_id),
            dispatch_id=dispatch_id,
            fire_at_unix=fire_at_unix,
        )
        return dispatch_id

    async def cancel(self, dispatch_id: str) -> bool:
        log.info("dispatch_cancel_local", dispatch_id=dispatch_id)
        return True


class QStashDispatcher:
    """Upstash QStash over its REST API."""

    def __init__(
        self,
        token: str,
        destination: str,
        base_url: str = "https://qstash.upstash.io",
        timeout: float = 15.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.token = token
        self.destination = destination
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=self.timeout,
            transport=self._transport,
            headers={"Authorization": f"Bearer {self.token}"},
        )

    async def schedule(self, *, thread_id: UUID, user_id: UUID, account_id: UUID, fire_at_unix: int) -> str:
        url = f"{self.base_url}/v2/publish/{self.destination}"
        headers = {"Content-Type": "application/json", "Upstash-Not-Before": str(fire_at_unix)}
        try:
            async with self._client() as client:
                response = await client.post(
                    url,
                    content=json.dumps(webhook_body(thread_id, user_id, account_id)),
                    headers=headers,
                )
                response.raise_for_status()
                dispatch_id = response.json()["messageId"]
        except httpx.HTTPStatusError as exc:
            log.error("dispatch_schedule_failed", thread_id=str(thread_id), status=exc.response.status_code)
            raise DispatchError(f"Could not schedule delivery (HTTP {exc.response.status_code})") from exc
        except (httpx.HTTPError, KeyError, ValueError) as exc:
            log.error("dispatch_schedule_failed", thread_id=str(thread_id), error=str(exc))
            raise DispatchError("Could not schedule delivery") from exc
        log.info("dispatch_scheduled", thread_id=str(thread_id), dispatch_id=dispatch_id, fire_at_unix=fire_at_unix)
        return dispatch_id

    async def cancel(self, dispatch_id: str) -> bool:
        if is_synthetic(dispatch_id):
            return False
        try:
            async with self._client() as client:
                response = await client.delete(f"{self.base_url}/v2/messages/{dispatch_id}")
        except httpx.HTTPError as exc:
            raise DispatchError(f"Could not cancel delivery {dispatch_id}") from exc
        if response.status_code == 404:
            return False
        if response.is_error:
            raise DispatchError(f"Could not cancel delivery {dispatch_id} (HTTP {response.status_code})")
        log.info("dispatch_cancelled", dispatch_id=dispatch_id)
        return True


class CeleryDispatcher:
    """ETA tasks on the Celery broker; the worker posts the signed webhook."""

    def __init__(self, destination: str):
        self.destination = destination

    async def schedule(self, *, thread_id: UUID, user_id: UUID, account_id: UUID, fire_at_unix: int) -> str:
        dispatch_id = f"celery-{uuid.uuid4()}"
        eta = datetime.fromtimestamp(fire_at_unix, tz=timezone.utc)
        kwargs = {
            "url": self.destination,
            "body": webhook_body(thread_id, user_id, account_id),
            "dispatch_id": dispatch_id,
        }
        try:
            await asyncio.to_thread(deliver_publish_webhook.apply_async, kwargs=kwargs, eta=eta, task_id=dispatch_id)
        except Exception as exc:
            log.error("dispatch_schedule_failed", thread_id=str(thread_id), error=str(exc))
            raise DispatchError("Could not schedule delivery") from exc
        log.info("dispatch_scheduled", thread_id=str(thread_id), dispatch_id=dispatch_id, fire_at_unix=fire_at_unix)
        return dispatch_id

    async def cancel(self, dispatch_id: str) -> bool:
        if is_synthetic(dispatch_id):
            return False
        try:
            await asyncio.to_thread(celery_app.control.revoke, dispatch_id)
        except Exception as exc:
            raise DispatchError(f"Could not cancel delivery {dispatch_id}") from exc
        log.info("dispatch_cancelled", dispatch_id=dispatch_id)
        return True


async def reschedule(
    dispatcher: Dispatcher,
    old_dispatch_id: str | None,
    *,
    thread_id: UUID,
    user_id: UUID,
    account_id: UUID,
    fire_at_unix: int,
) -> str:
    """Cancel then schedule. Not atomic; a duplicate delivery is a publisher no-op."""
    if old_dispatch_id:
        try:
            await dispatcher.cancel(old_dispatch_id)
        except DispatchError as exc:
            log.warning("dispatch_cancel_failed", dispatch_id=old_dispatch_id, error=exc.message)
    return await dispatcher.schedule(
        thread_id=thread_id, user_id=user_id, account_id=account_id, fire_at_unix=fire_at_unix
    )


_dispatcher: Dispatcher | None = None


def get_dispatcher() -> Dispatcher:
    """Dispatcher singleton chosen by DISPATCHER_BACKEND."""
    global _dispatcher
    if _dispatcher is None:
        _dispatcher = build_dispatcher(settings.DISPATCHER_BACKEND)
    return _dispatcher


def build_dispatcher(backend: str) -> Dispatcher:
    destination = settings.webhook_endpoint
    if backend == "qstash" and destination and settings.QSTASH_TOKEN:
        return QStashDispatcher(settings.QSTASH_TOKEN, destination, base_url=settings.QSTASH_URL)
    # The webhook rejects unsigned deliveries, so the worker needs the signing key.
    if backend == "celery" and destination and settings.QSTASH_CURRENT_SIGNING_KEY:
        return CeleryDispatcher(destination)
    if backend != "local":
        log.warning(
            "dispatcher_fallback_local",
            backend=backend,
            webhook_configured=bool(destination),
            signing_key_configured=bool(settings.QSTASH_CURRENT_SIGNING_KEY),
        )
    return LocalDispatcher()
