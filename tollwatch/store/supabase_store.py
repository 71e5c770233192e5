"""Supabase persistence for toll notices: per-row idempotent insert and scoped reads."""
import asyncio
import logging
import re
from dataclasses import dataclass, field
from decimal import InvalidOperation
from typing import Any, Iterable, Optional

from postgrest.exceptions import APIError
from pydantic import ValidationError
from supabase import Client, create_client

from tollwatch.config import config
from tollwatch.errors import NoticeNotFound, PersistenceRowError, PersistenceUnavailable
from tollwatch.parse.models import ListFilters, SaveOutcome, SortSpec, SourceTag, TollNotice

logger = logging.getLogger(__name__)

UNIQUE_VIOLATION = "23505"
# Postgres "relation does not exist" and PostgREST "table not in schema cache"
MISSING_TABLE_CODES = {"42P01", "PGRST205"}


@dataclass
class UpsertOutcome:
    saved: list[TollNotice] = field(default_factory=list)
    duplicates: list[TollNotice] = field(default_factory=list)
    schema_missing: bool = False

    def to_save_outcome(self) -> SaveOutcome:
        return SaveOutcome(
            saved_count=len(self.saved),
            duplicate_count=len(self.duplicates),
            schema_missing=self.schema_missing,
        )


def _is_missing_table(error: APIError) -> bool:
    return error.code in MISSING_TABLE_CODES


class ReconciliationStore:
    """Reads and writes the toll_notices table, always scoped by owner."""

    def __init__(self, client: Optional[Client] = None, table: str = config.TOLL_TABLE):
        if client is None:
            if not config.SUPABASE_URL or not config.SUPABASE_SERVICE_ROLE:
                raise ValueError("Supabase configuration missing")
            client = create_client(config.SUPABASE_URL, config.SUPABASE_SERVICE_ROLE)
        self.client = client
        self.table = table

    async def upsert_batch(
        self,
        notices: Iterable[TollNotice],
        owner: str,
        source: SourceTag = SourceTag.API_SEARCH,
    ) -> UpsertOutcome:
        """Insert each notice on its own; natural-key conflicts count as duplicates."""
        loop = asyncio.get_event_loop()
        outcome = await loop.run_in_executor(
            None, self._upsert_batch_sync, list(notices), owner, source
        )
        logger.info(
            f"Saved {len(outcome.saved)} toll notice(s), {len(outcome.duplicates)} duplicate(s)"
            f"{' (table missing)' if outcome.schema_missing else ''} for user {owner}"
        )
        return outcome

    def _upsert_batch_sync(self, notices: list[TollNotice], owner: str, source: SourceTag) -> UpsertOutcome:
        outcome = UpsertOutcome()
        for notice in notices:
            scoped = notice.model_copy(update={"owner_id": owner, "source": source})
            try:
                outcome.saved.append(self._insert_row_sync(scoped))
            except PersistenceUnavailable:
                logger.warning("Toll notices table does not exist - migration needed")
                outcome.schema_missing = True
                break
            except PersistenceRowError as e:
                if e.code == UNIQUE_VIOLATION:
                    logger.debug(
                        f"Duplicate toll notice skipped: {scoped.plate} - {scoped.motorway} - {scoped.issued_date}"
                    )
                    outcome.duplicates.append(scoped)
                else:
                    logger.error(
                        f"Error saving toll notice {scoped.plate} - {scoped.motorway} - "
                        f"{scoped.issued_date}: {e} (code={e.code})"
                    )
        return outcome

    def _insert_row_sync(self, notice: TollNotice) -> TollNotice:
        try:
            response = self.client.table(self.table).insert(notice.to_row()).execute()
        except APIError as e:
            if _is_missing_table(e):
                raise PersistenceUnavailable(e.message or "table missing") from e
            raise PersistenceRowError(e.message or str(e), code=e.code) from e
        except Exception as e:
            raise PersistenceRowError(str(e)) from e
        rows = response.data or []
        return TollNotice.from_row(rows[0]) if rows else notice

    def _list_sync(self, owner: str, filters: ListFilters, sort: SortSpec) -> list[TollNotice]:
        query = self.client.table(self.table).select("*").eq("user_id", owner)
        if filters.plate:
            plate = re.sub(r"[^A-Za-z0-9]", "", filters.plate).upper()
            if plate:
                query = query.ilike("licence_plate", f"%{plate}%")
        if filters.status == "paid":
            query = query.eq("is_paid", True)
        elif filters.status == "unpaid":
            query = query.eq("is_paid", False)
        if filters.vehicle_type is not None:
            query = query.eq("vehicle_type", filters.vehicle_type.value)
        query = query.order(sort.field, desc=not sort.ascending)

        try:
            response = query.execute()
        except APIError as e:
            if _is_missing_table(e):
                raise PersistenceUnavailable(e.message or "table missing") from e
            raise
        notices = []
        for row in response.data or []:
            try:
                notices.append(TollNotice.from_row(row))
            except (ValidationError, KeyError, InvalidOperation) as e:
                logger.warning(f"Skipping unreadable toll notice row {row.get('id')} for user {owner}: {e}")
        return notices

    async def list(self, owner: str, filters: ListFilters, sort: SortSpec) -> list[TollNotice]:
        loop = asyncio.get_event_loop()
        return await loop.run_in_executor(None, self._list_sync, owner, filters, sort)

    async def mark_paid(self, owner: str, notice_id: str) -> TollNotice:
        loop = asyncio.get_event_loop()
        return await loop.run_in_executor(None, self._mark_paid_sync, owner, notice_id)

    def _mark_paid_sync(self, owner: str, notice_id: str) -> TollNotice:
        try:
            response = (
                self.client.table(self.table)
                .update({"is_paid": True})
                .eq("id", notice_id)
                .eq("user_id", owner)
                .execute()
            )
        except APIError as e:
            if _is_missing_table(e):
                raise PersistenceUnavailable(e.message or "table missing") from e
            raise
        rows = response.data or []
        if not rows:
            raise NoticeNotFound(f"Toll notice {notice_id} not found")
        logger.info(f"Toll notice {notice_id} marked as paid for user {owner}")
        return TollNotice.from_row(rows[0])

    async def aggregate_statistics(self, owner: str, function: str = config.STATISTICS_FUNCTION) -> Optional[dict[str, Any]]:
        """Server-side statistics; None when the function is not installed."""
        loop = asyncio.get_event_loop()
        try:
            response = await loop.run_in_executor(
                None, lambda: self.client.rpc(function, {"user_uuid": owner}).execute()
            )
        except APIError as e:
            logger.info(f"Statistics function {function} not available (code={e.code}), using basic calculation")
            return None
        data = response.data
        if isinstance(data, list):
            data = data[0] if data else None
        return data if isinstance(data, dict) and data else None

    async def test_connection(self) -> bool:
        """Test Supabase connection."""
        try:
            loop = asyncio.get_event_loop()
            await loop.run_in_executor(
                None,
                lambda: (
                    self.client.table(self.table)
                    .select("id", count="exact")
                    .limit(1)
                    .execute()
                ),
            )
            logger.info("Supabase connection successful")
            return True
        except Exception as e:
            logger.error(f"Supabase connection test failed: {e}")
            return False
