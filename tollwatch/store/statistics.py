"""Dashboard statistics, from the server aggregate or computed from records."""
import logging
from datetime import date
from typing import Callable, Iterable, Optional

from tollwatch.parse.models import ZERO, ListFilters, SortSpec, Statistics, TollNotice
from tollwatch.parse.validation import is_overdue
from tollwatch.store.supabase_store import ReconciliationStore

logger = logging.getLogger(__name__)


def compute_statistics(records: Iterable[TollNotice], today: date) -> Statistics:
    """Same shape and overdue rule as get_user_toll_statistics()."""
    stats = {
        "total_notices": 0,
        "total_amount": ZERO,
        "paid_notices": 0,
        "unpaid_notices": 0,
        "overdue_notices": 0,
        "unpaid_amount": ZERO,
        "overdue_amount": ZERO,
        "admin_fees": ZERO,
        "toll_fees": ZERO,
    }
    for notice in records:
        stats["total_notices"] += 1
        stats["total_amount"] += notice.total_amount
        stats["admin_fees"] += notice.admin_fee
        stats["toll_fees"] += notice.toll_amount
        if notice.is_paid:
            stats["paid_notices"] += 1
            continue
        stats["unpaid_notices"] += 1
        stats["unpaid_amount"] += notice.total_amount
        if is_overdue(notice, today):
            stats["overdue_notices"] += 1
            stats["overdue_amount"] += notice.total_amount
    return Statistics(**stats, source="computed")


class StatisticsAggregator:
    def __init__(self, store: ReconciliationStore, clock: Callable[[], date] = date.today):
        self.store = store
        self.clock = clock

    async def summarize(
        self,
        owner: str,
        filters: Optional[ListFilters] = None,
        records: Optional[list[TollNotice]] = None,
    ) -> Statistics:
        """
        Prefer the precomputed aggregate. It is not filter-aware, so any active
        filter goes straight to the computed path.
        """
        filters = filters or ListFilters()
        if not filters.is_active:
            data = await self.store.aggregate_statistics(owner)
            if data is not None:
                return Statistics.model_validate({**data, "source": "aggregate"})

        if records is None:
            records = await self.store.list(owner, filters, SortSpec())
        return compute_statistics(records, self.clock())
