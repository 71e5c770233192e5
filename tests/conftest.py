"""Shared fakes: a scripted portal driver and an in-memory Supabase client."""
import asyncio
import uuid
from datetime import datetime, timezone
from types import SimpleNamespace
from typing import Any, Optional

import pytest
from postgrest.exceptions import APIError

from tollwatch.jobs.coalescer import RequestCoalescer
from tollwatch.jobs.engine import TollNoticeEngine
from tollwatch.jobs.retry import RetryPolicy
from tollwatch.parse.models import RawPortalResult
from tollwatch.store.audit import AuditLog
from tollwatch.store.supabase_store import ReconciliationStore

SEARCH_URL = "https://tollnotice.linkt.com.au/Search.asp"

NATURAL_KEY = ("licence_plate", "motorway", "issued_date", "toll_amount", "admin_fee", "user_id")


def build_results_table(rows: list[tuple]) -> str:
    """
    Markup shaped like the portal's results table.
    Each row is (plate, motorway, issued, status, admin_fee, toll_amount).
    """
    body = []
    for plate, motorway, issued, status, admin_fee, toll in rows:
        body.append(
            "<tr>"
            '<td><input type="checkbox"></td>'
            f"<td>{plate}</td>"
            f"<td>{motorway}</td>"
            f"<td>{issued}</td>"
            f'<td><abbr title="{status}">{status}</abbr></td>'
            f"<td>{admin_fee}</td>"
            f"<td>{toll}</td>"
            "<td>$0.00</td>"
            "</tr>"
        )
    return (
        '<table id="additionalResults">'
        "<tr><th></th><th>Plate</th><th>Motorway</th><th>Date</th><th>Status</th>"
        "<th>Admin fee</th><th>Toll</th><th>Total</th></tr>"
        + "".join(body)
        + "</table>"
    )


def table_result(rows: list[tuple]) -> RawPortalResult:
    return RawPortalResult(final_url=SEARCH_URL, table_html=build_results_table(rows))


M2_ROW = ("ABC123", "M2", "2024-01-10", "Unpaid", "$12.00", "$8.50")


class FakeDriver:
    """Replays scripted outcomes; the last one repeats forever."""

    def __init__(self, outcomes: list[Any], delay: float = 0.0):
        self.outcomes = list(outcomes)
        self.delay = delay
        self.calls: list[tuple] = []

    async def acquire(self, query, timeout_budget: float) -> RawPortalResult:
        self.calls.append((query, timeout_budget))
        if self.delay:
            await asyncio.sleep(self.delay)
        outcome = self.outcomes.pop(0) if len(self.outcomes) > 1 else self.outcomes[0]
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome


class FakeResponse:
    def __init__(self, data: Any, count: Optional[int] = None):
        self.data = data
        self.count = count


class FakeQuery:
    """Just enough of the postgrest builder chain for ReconciliationStore."""

    def __init__(self, db: "FakeSupabase", table: str):
        self.db = db
        self.table = table
        self._op = "select"
        self._payload: Any = None
        self._filters: list = []
        self._order: Optional[tuple] = None
        self._limit: Optional[int] = None

    def select(self, *columns, count=None):
        self._op = "select"
        return self

    def insert(self, row: dict):
        self._op = "insert"
        self._payload = row
        return self

    def update(self, values: dict):
        self._op = "update"
        self._payload = values
        return self

    def eq(self, column: str, value: Any):
        self._filters.append(lambda r: r.get(column) == value)
        return self

    def ilike(self, column: str, pattern: str):
        needle = pattern.strip("%").lower()
        self._filters.append(lambda r: needle in str(r.get(column) or "").lower())
        return self

    def order(self, column: str, desc: bool = False):
        self._order = (column, desc)
        return self

    def limit(self, size: int):
        self._limit = size
        return self

    def _matching(self) -> list[dict]:
        return [r for r in self.db.rows if all(f(r) for f in self._filters)]

    def execute(self) -> FakeResponse:
        self.db.executed.append(self._op)
        if self.db.missing_table:
            raise APIError({"message": f'relation "public.{self.table}" does not exist', "code": "42P01"})

        if self._op == "insert":
            return FakeResponse([self.db.insert(self._payload)])

        if self._op == "update":
            updated = []
            for row in self._matching():
                row.update(self._payload)
                updated.append(dict(row))
            return FakeResponse(updated)

        rows = [dict(r) for r in self._matching()]
        if self._order:
            column, desc = self._order
            rows.sort(key=lambda r: (r.get(column) is None, r.get(column)), reverse=desc)
        if self._limit is not None:
            rows = rows[: self._limit]
        return FakeResponse(rows, count=len(rows))


class FakeSupabase:
    """In-memory stand-in for supabase.Client with PostgREST error codes."""

    def __init__(self):
        self.rows: list[dict] = []
        self.missing_table = False
        # Error codes raised by the next inserts, consumed in order
        self.insert_errors: list[str] = []
        self.rpc_result: Any = None
        self.rpc_error_code: Optional[str] = "PGRST202"
        self.rpc_calls: list[tuple] = []
        self.executed: list[str] = []
        self.auth = SimpleNamespace(get_user=self._get_user)
        self.tokens: dict[str, str] = {}

    def table(self, name: str) -> FakeQuery:
        return FakeQuery(self, name)

    def insert(self, row: dict) -> dict:
        if self.insert_errors:
            code = self.insert_errors.pop(0)
            raise APIError({"message": f"simulated failure {code}", "code": code})
        key = tuple(row.get(column) for column in NATURAL_KEY)
        for existing in self.rows:
            if tuple(existing.get(column) for column in NATURAL_KEY) == key:
                raise APIError(
                    {
                        "message": 'duplicate key value violates unique constraint "toll_notices_natural_key"',
                        "code": "23505",
                    }
                )
        stored = dict(row)
        stored["id"] = str(uuid.uuid4())
        stored["created_at"] = datetime.now(timezone.utc).isoformat()
        self.rows.append(stored)
        return dict(stored)

    def rpc(self, function: str, params: dict):
        self.rpc_calls.append((function, params))
        db = self

        class _Call:
            def execute(self):
                if db.rpc_error_code:
                    raise APIError({"message": f"function {function} not found", "code": db.rpc_error_code})
                return FakeResponse(db.rpc_result)

        return _Call()

    def _get_user(self, token: str):
        if token not in self.tokens:
            raise APIError({"message": "invalid JWT", "code": "401"})
        return SimpleNamespace(user=SimpleNamespace(id=self.tokens[token]))


async def no_sleep(_delay: float) -> None:
    return None


@pytest.fixture
def fake_db() -> FakeSupabase:
    return FakeSupabase()


@pytest.fixture
def store(fake_db) -> ReconciliationStore:
    return ReconciliationStore(client=fake_db)


@pytest.fixture
def fast_policy() -> RetryPolicy:
    return RetryPolicy(max_attempts=2, base_delay=0.0, structure_retry_limit=1)


@pytest.fixture
def make_engine(store, fast_policy):
    """Engine factory over the fake store; audit stays in the log only."""

    def _make(driver, **kwargs) -> TollNoticeEngine:
        kwargs.setdefault("policy", fast_policy)
        kwargs.setdefault("audit", AuditLog(enabled=False))
        kwargs.setdefault("coalescer", RequestCoalescer())
        kwargs.setdefault("sleep", no_sleep)
        return TollNoticeEngine(driver=driver, store=store, **kwargs)

    return _make
