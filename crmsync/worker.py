"""Background worker for processing queued webhook events."""

from __future__ import annotations

import asyncio
import logging
from typing import Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .config import settings
from .database import async_session_factory
from .models.base import as_utc
from .models.webhook_event import WebhookEvent
from .schemas.webhook import WebhookBatchResult, WebhookEnvelope
from .services import segment_svc
from .services.dispatch_svc import (
    claim_events,
    get_event,
    mark_event_done,
    mark_event_failed,
    recover_running,
)
from .services.webhook_svc import OUTCOME_APPLIED, apply_event, event_identity
from .upstream.client import HubSpotClient

logger = logging.getLogger(__name__)


class WebhookWorker:
    """Polls the event queue and applies events with bounded concurrency.

    Each claim cycle takes at most one event per ``object_id``, so events for
    the same object are applied one at a time in arrival order while distinct
    objects proceed in parallel.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        client_factory: Callable | None = None,
        concurrency: int | None = None,
    ) -> None:
        self._session_factory = session_factory or async_session_factory
        self._client_factory = client_factory or HubSpotClient.from_settings
        self._concurrency = max(1, concurrency or settings.webhook_worker_concurrency)
        self._task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()

    def start(self) -> None:
        if self._task is not None or not settings.webhook_worker_enabled:
            return
        if not settings.upstream_configured:
            logger.warning("Webhook worker not started: upstream access token is not configured")
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self._run_loop(), name="webhook-event-worker")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._stop_event.set()
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        finally:
            self._task = None

    async def _run_loop(self) -> None:
        async with self._session_factory() as db:
            recovered = await recover_running(db)
        if recovered:
            logger.info("Requeued %d events left running", recovered)

        async with self._client_factory() as client:
            while not self._stop_event.is_set():
                batch = WebhookBatchResult()
                try:
                    batch = await self.run_once(client)
                except asyncio.CancelledError:
                    raise
                except Exception:  # pragma: no cover
                    logger.exception("Webhook worker loop failed")

                if not batch.processed:
                    await asyncio.sleep(settings.webhook_poll_interval_seconds)

    async def run_once(self, client) -> WebhookBatchResult:
        """Claim one round of head events and apply them with per-event isolation.

        A failing event is recorded in the batch report and scheduled for retry;
        it never stops the rest of the batch.
        """
        async with self._session_factory() as db:
            events = await claim_events(db)
        result = WebhookBatchResult()
        if not events:
            return result

        semaphore = asyncio.Semaphore(self._concurrency)
        changed: set[str] = set()

        async def _handle(event: WebhookEvent) -> None:
            async with semaphore:
                changed.update(await self._process(client, event, result))

        await asyncio.gather(*(_handle(e) for e in events))

        if changed:
            async with self._session_factory() as db:
                await segment_svc.refresh_affected(db, changed)
        logger.info(
            "Webhook batch processed",
            extra={
                "applied": result.applied,
                "skipped": result.skipped,
                "failed": result.failed,
                "failed_events": result.failed_events,
            },
        )
        return result

    async def _process(self, client, event: WebhookEvent, result: WebhookBatchResult) -> set[str]:
        event_id = event.id
        envelope = WebhookEnvelope(
            object_id=event.object_id,
            event_type=event.event_type,
            occurred_at=as_utc(event.occurred_at),
        )
        try:
            async with self._session_factory() as db:
                outcome = await apply_event(db, client, envelope)
        except Exception as exc:
            result.failed += 1
            result.failed_events.append(event_identity(envelope))
            logger.exception(
                "Webhook event failed",
                extra={
                    "event_id": str(event_id),
                    "object_id": envelope.object_id,
                    "event_type": envelope.event_type,
                },
            )
            async with self._session_factory() as db:
                row = await get_event(db, event_id)
                if row is not None:
                    await mark_event_failed(db, row, f"{type(exc).__name__}: {exc}")
            return set()

        if outcome.outcome == OUTCOME_APPLIED:
            result.applied += 1
        else:
            result.skipped += 1
        async with self._session_factory() as db:
            row = await get_event(db, event_id)
            if row is not None:
                await mark_event_done(db, row, outcome.outcome)
        return outcome.changed_fields


webhook_worker = WebhookWorker()
