"""Toll notice engine: search, list and mark_paid over the injected collaborators."""
import asyncio
import logging
import time
from typing import Awaitable, Callable, Optional

from tollwatch.config import config
from tollwatch.errors import InputError, PersistenceUnavailable, ResultWaitTimeout, TerminalError
from tollwatch.fetch.portal import PortalDriver
from tollwatch.jobs.coalescer import RequestCoalescer
from tollwatch.jobs.retry import AcquisitionAttempt, RetryPolicy, with_retry
from tollwatch.parse.models import (
    AcquisitionResult,
    ListFilters,
    ListResult,
    SaveOutcome,
    SearchQuery,
    SortSpec,
    SourceTag,
    TollNotice,
)
from tollwatch.parse.result_parser import ParsedBatch, compute_totals, parse
from tollwatch.parse.validation import build_query
from tollwatch.store.audit import (
    INVALID_TOLL_SEARCH,
    TOLL_SEARCH_ATTEMPTED,
    TOLL_SEARCH_ERROR,
    AuditLog,
)
from tollwatch.store.statistics import StatisticsAggregator
from tollwatch.store.supabase_store import ReconciliationStore

logger = logging.getLogger(__name__)

MIN_ATTEMPT_BUDGET = 1.0


def search_key(owner: str, query: SearchQuery) -> tuple:
    """Coalescing and cache key. Tenant-scoped so results never cross owners."""
    return (owner, query.plate, query.jurisdiction.value)


class TollNoticeEngine:
    def __init__(
        self,
        driver: PortalDriver,
        store: Optional[ReconciliationStore],
        statistics: Optional[StatisticsAggregator] = None,
        coalescer: Optional[RequestCoalescer] = None,
        audit: Optional[AuditLog] = None,
        policy: Optional[RetryPolicy] = None,
        deadline: float = config.SEARCH_DEADLINE,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.driver = driver
        self.store = store
        self.statistics = statistics or StatisticsAggregator(store)
        self.coalescer = coalescer or RequestCoalescer()
        self.audit = audit or AuditLog(enabled=False)
        self.policy = policy or RetryPolicy()
        self.deadline = deadline
        self.sleep = sleep

    async def _validate(
        self,
        owner: str,
        plate: Optional[str],
        jurisdiction: Optional[str],
        notice_number_hint: Optional[str],
        is_two_wheeler: bool,
    ) -> SearchQuery:
        try:
            return build_query(plate, jurisdiction, notice_number_hint, is_two_wheeler)
        except InputError as e:
            await self.audit.record(
                INVALID_TOLL_SEARCH,
                f"Invalid toll search input: {e}",
                user_id=owner,
                details={"plate": (plate or "")[:20], "state": (jurisdiction or "")[:10]},
            )
            raise

    async def search(
        self,
        owner: str,
        plate: Optional[str],
        jurisdiction: Optional[str],
        notice_number_hint: Optional[str] = None,
        is_two_wheeler: bool = False,
        source: SourceTag = SourceTag.API_SEARCH,
    ) -> AcquisitionResult:
        """
        Acquire current notices from the portal and reconcile them with the store.

        Concurrent searches for the same owner, plate and jurisdiction share a
        single acquisition and receive the identical result.
        """
        query = await self._validate(owner, plate, jurisdiction, notice_number_hint, is_two_wheeler)
        await self.audit.record(
            TOLL_SEARCH_ATTEMPTED,
            f"Toll search for {query.plate} ({query.jurisdiction.value})",
            user_id=owner,
            details={"has_notice_number": bool(query.notice_number_hint), "is_two_wheeler": query.is_two_wheeler},
        )

        key = search_key(owner, query)
        try:
            return await self.coalescer.get_or_start(
                key, lambda: self._acquire_and_reconcile(query, owner, source, key)
            )
        except TerminalError as e:
            await self.audit.record(
                TOLL_SEARCH_ERROR,
                f"Toll search failed for {query.plate}: {e.cause}",
                user_id=owner,
                details={"attempts": e.attempts, "cause_kind": e.cause_kind},
            )
            raise

    async def _acquire(self, query: SearchQuery, key: tuple, source: SourceTag) -> ParsedBatch:
        attempt = AcquisitionAttempt(key=key)
        started = time.monotonic()

        async def _once() -> ParsedBatch:
            budget = max(self.deadline - (time.monotonic() - started), MIN_ATTEMPT_BUDGET)
            raw = await self.driver.acquire(query, budget)
            return parse(raw, query, source)

        try:
            return await asyncio.wait_for(
                with_retry(_once, self.policy, attempt, sleep=self.sleep),
                timeout=self.deadline,
            )
        except asyncio.TimeoutError as e:
            logger.error(f"Search for {key} exceeded the {self.deadline:.0f}s deadline")
            cause = ResultWaitTimeout(f"Search exceeded the overall deadline of {self.deadline:.0f}s")
            raise TerminalError(cause, attempt.attempt_number) from e

    async def _acquire_and_reconcile(
        self, query: SearchQuery, owner: str, source: SourceTag, key: tuple
    ) -> AcquisitionResult:
        batch = await self._acquire(query, key, source)
        scoped = [n.model_copy(update={"owner_id": owner, "source": source}) for n in batch.notices]
        if not scoped:
            logger.info(f"No toll notices found for {query.plate} ({query.jurisdiction.value})")
            return AcquisitionResult(totals=batch.totals, save_outcome=SaveOutcome())

        outcome = await self.store.upsert_batch(scoped, owner, source)
        saved = {n.natural_key: n for n in outcome.saved}
        return AcquisitionResult(
            notices=tuple(saved.get(n.natural_key, n) for n in scoped),
            totals=batch.totals,
            save_outcome=outcome.to_save_outcome(),
        )

    async def refine(
        self,
        owner: str,
        plate: Optional[str],
        jurisdiction: Optional[str],
        notice_number_hint: Optional[str] = None,
        is_two_wheeler: bool = False,
    ) -> AcquisitionResult:
        """Narrow a cached result without touching the portal; searches on a miss."""
        query = await self._validate(owner, plate, jurisdiction, notice_number_hint, is_two_wheeler)
        cached = self.coalescer.cached(search_key(owner, query))
        if cached is None:
            logger.info(f"No cached result for {query.plate} ({query.jurisdiction.value}), searching")
            return await self.search(owner, plate, jurisdiction, notice_number_hint, is_two_wheeler)

        notices = [n for n in cached.notices if n.vehicle_type == query.vehicle_type]
        if query.notice_number_hint:
            notices = [n for n in notices if query.notice_number_hint in (n.notice_number or "")]
        return AcquisitionResult(
            notices=tuple(notices),
            totals=compute_totals(notices),
            save_outcome=cached.save_outcome,
            acquired_at=cached.acquired_at,
        )

    async def probe(self, query: SearchQuery) -> ParsedBatch:
        """Acquire and parse only. Nothing is persisted or cached."""
        return await self._acquire(query, ("probe", query.plate, query.jurisdiction.value), SourceTag.API_SEARCH)

    async def list(
        self,
        owner: str,
        filters: Optional[ListFilters] = None,
        sort: Optional[SortSpec] = None,
    ) -> ListResult:
        filters = filters or ListFilters()
        sort = sort or SortSpec()
        try:
            records = await self.store.list(owner, filters, sort)
        except PersistenceUnavailable:
            logger.warning("Toll notices table does not exist - returning empty list")
            return ListResult(needs_migration=True)

        statistics = await self.statistics.summarize(owner, filters, records)
        return ListResult(records=records, statistics=statistics)

    async def mark_paid(self, owner: str, notice_id: str) -> TollNotice:
        if not notice_id or not str(notice_id).strip():
            raise InputError("Missing toll notice id")
        return await self.store.mark_paid(owner, str(notice_id).strip())

    def clear_cache(self) -> int:
        return self.coalescer.clear()

    def cache_status(self) -> dict:
        return self.coalescer.status()
