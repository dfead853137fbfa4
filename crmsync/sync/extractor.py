"""Resumable bulk extraction with adaptive shrink-and-skip.

Upstream occasionally fails to serve a page because of one malformed record.
Instead of aborting the run, the extractor retries the same cursor at
shrinking page sizes until the bad record is isolated, then steps over it and
records a gap marker.

The extractor never writes to the store. It yields ``ExtractionStep`` items and
the caller commits each step together with its checkpoint cursor.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import AsyncIterator, Awaitable, Callable, Sequence

from ..config import settings
from ..errors import RateLimited, TransientNetworkError, UpstreamCorruptRecord, UpstreamRejected
from ..schemas.sync import ExtractionReport, GapMarker
from ..upstream.client import ContactPage, UpstreamClient
from .field_mapper import NormalizedContact, normalize_contact

logger = logging.getLogger(__name__)

HALT_RATE_LIMITED = "rate_limited"
HALT_TRANSIENT = "transient_network"
HALT_REJECTED = "upstream_rejected"
HALT_CIRCUIT_BREAKER = "circuit_breaker"


@dataclass
class ExtractionStep:
    """Records (or one gap marker) plus the cursor to checkpoint once committed."""

    records: list[NormalizedContact] = field(default_factory=list)
    cursor: str | None = None
    gap: GapMarker | None = None
    fetched: int = 0
    skipped: int = 0
    page_size: int = 0


def tally(report: ExtractionReport, step: ExtractionStep) -> None:
    """Add one committed step to the running totals."""
    if step.gap is not None:
        report.gapped += 1
        report.gaps.append(step.gap)
    else:
        report.pages += 1
        report.fetched += step.fetched
        report.skipped += step.skipped
    report.final_cursor = step.cursor


class _RunHalted(Exception):
    def __init__(self, reason: str, detail: str) -> None:
        super().__init__(detail)
        self.reason = reason
        self.detail = detail


class BulkExtractor:
    """Sequential cursor walk over one upstream source."""

    def __init__(
        self,
        client: UpstreamClient,
        properties: Sequence[str],
        *,
        source: str = "",
        page_size: int | None = None,
        shrink_sizes: Sequence[int] | None = None,
        gap_skip: int | None = None,
        max_consecutive_gaps: int | None = None,
        rate_limit_base_seconds: float | None = None,
        rate_limit_max_seconds: float | None = None,
        rate_limit_max_retries: int | None = None,
        transient_base_seconds: float | None = None,
        transient_max_retries: int | None = None,
        cancel_event: asyncio.Event | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.client = client
        self.properties = list(properties)
        self.source = source
        self.page_size = page_size or settings.sync_page_size
        self.ladder = self._build_ladder(self.page_size, shrink_sizes or settings.shrink_sizes)
        self.gap_skip = max(1, gap_skip if gap_skip is not None else settings.sync_gap_skip)
        self.max_consecutive_gaps = max(
            1,
            max_consecutive_gaps
            if max_consecutive_gaps is not None
            else settings.sync_max_consecutive_gaps,
        )
        self.rate_limit_base = (
            rate_limit_base_seconds
            if rate_limit_base_seconds is not None
            else settings.sync_rate_limit_base_seconds
        )
        self.rate_limit_max = (
            rate_limit_max_seconds
            if rate_limit_max_seconds is not None
            else settings.sync_rate_limit_max_seconds
        )
        self.rate_limit_retries = (
            rate_limit_max_retries
            if rate_limit_max_retries is not None
            else settings.sync_rate_limit_max_retries
        )
        self.transient_base = (
            transient_base_seconds
            if transient_base_seconds is not None
            else settings.sync_transient_base_seconds
        )
        self.transient_retries = (
            transient_max_retries
            if transient_max_retries is not None
            else settings.sync_transient_max_retries
        )
        self.cancel_event = cancel_event or asyncio.Event()
        self._sleep = sleep
        self.report = ExtractionReport(source=source)

    @staticmethod
    def _build_ladder(page_size: int, shrink_sizes: Sequence[int]) -> list[int]:
        sizes = {page_size, 1}
        sizes.update(s for s in shrink_sizes if 0 < s < page_size)
        return sorted(sizes, reverse=True)

    async def steps(self, cursor: str | None = None) -> AsyncIterator[ExtractionStep]:
        """Walk upstream from ``cursor`` (None = beginning) until no pages remain."""
        report = self.report
        report.status = "running"
        report.start_cursor = cursor
        report.final_cursor = cursor
        position = cursor
        consecutive_gaps = 0

        logger.info(
            "Bulk extraction started",
            extra={"source": self.source, "cursor": cursor, "size": self.page_size},
        )

        try:
            while True:
                if self.cancel_event.is_set():
                    report.status = "cancelled"
                    logger.info(
                        "Bulk extraction cancelled",
                        extra={"source": self.source, "cursor": position},
                    )
                    return

                page, size, failure = await self._fetch_localized(position)

                if page is None:
                    consecutive_gaps += 1
                    gap = GapMarker(cursor_position=position, reason=failure or "unreadable record")
                    if consecutive_gaps >= self.max_consecutive_gaps:
                        gap.skipped = False
                        report.gapped += 1
                        report.gaps.append(gap)
                        raise _RunHalted(
                            HALT_CIRCUIT_BREAKER,
                            f"{consecutive_gaps} consecutive unreadable positions ending at {position!r}",
                        )
                    next_position = self.client.advance_cursor(position, self.gap_skip)
                    logger.warning(
                        "Skipping unreadable upstream record",
                        extra={"source": self.source, "cursor": position, "skip": self.gap_skip},
                    )
                    step = ExtractionStep(cursor=next_position, gap=gap, page_size=1)
                    yield step
                    # Resumed only once the caller has committed the step.
                    tally(report, step)
                    position = next_position
                    continue

                consecutive_gaps = 0
                step = self._to_step(page, size)
                yield step
                tally(report, step)

                if page.next_cursor is None:
                    report.status = "completed"
                    logger.info(
                        "Bulk extraction completed",
                        extra={
                            "source": self.source,
                            "fetched": report.fetched,
                            "gapped": report.gapped,
                            "errored": report.errored,
                        },
                    )
                    return
                position = page.next_cursor
        except _RunHalted as halt:
            report.status = "halted"
            report.halt_reason = halt.reason
            logger.warning(
                "Bulk extraction halted: %s",
                halt.detail,
                extra={"source": self.source, "cursor": position, "reason": halt.reason},
            )

    def _to_step(self, page: ContactPage, size: int) -> ExtractionStep:
        records: list[NormalizedContact] = []
        skipped = 0
        for raw in page.records:
            record = normalize_contact(raw)
            if not record.external_id:
                skipped += 1
                logger.warning(
                    "Upstream record without an id skipped",
                    extra={"source": self.source, "size": size},
                )
                continue
            records.append(record)
        return ExtractionStep(
            records=records,
            cursor=page.next_cursor,
            fetched=len(page.records),
            skipped=skipped,
            page_size=size,
        )

    async def _fetch_localized(
        self, position: str | None
    ) -> tuple[ContactPage | None, int, str | None]:
        """Try each ladder size at ``position``. Returns (None, 1, reason) for a gap."""
        failure = None
        for size in self.ladder:
            try:
                return await self._fetch(position, size), size, None
            except UpstreamCorruptRecord as exc:
                self.report.errored += 1
                failure = str(exc)
                logger.warning(
                    "Page request failed, shrinking",
                    extra={"source": self.source, "cursor": position, "size": size},
                )
        return None, 1, failure

    async def _fetch(self, position: str | None, size: int) -> ContactPage:
        """One page request with rate-limit and transient retries at the same cursor."""
        rate_attempts = 0
        transient_attempts = 0
        while True:
            try:
                return await self.client.list_contacts(self.properties, limit=size, after=position)
            except RateLimited as exc:
                rate_attempts += 1
                if rate_attempts > self.rate_limit_retries:
                    raise _RunHalted(HALT_RATE_LIMITED, f"rate limit budget exhausted at {position!r}")
                delay = exc.retry_after
                if delay is None:
                    delay = min(self.rate_limit_base * 2 ** (rate_attempts - 1), self.rate_limit_max)
                self.report.rate_limit_waits += 1
                logger.info(
                    "Rate limited, backing off %.2fs",
                    delay,
                    extra={"source": self.source, "cursor": position, "size": size},
                )
                await self._sleep(delay)
            except TransientNetworkError as exc:
                transient_attempts += 1
                if transient_attempts > self.transient_retries:
                    raise _RunHalted(HALT_TRANSIENT, str(exc))
                delay = self.transient_base * 2 ** (transient_attempts - 1)
                logger.info(
                    "Transient upstream error, retrying in %.2fs",
                    delay,
                    extra={"source": self.source, "cursor": position, "size": size},
                )
                await self._sleep(delay)
            except UpstreamRejected as exc:
                raise _RunHalted(HALT_REJECTED, str(exc))
