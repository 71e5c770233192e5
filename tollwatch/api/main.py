"""FastAPI application exposing toll notice search, listing and payment marking."""
import logging
from datetime import datetime, timezone
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from fastapi.security import APIKeyHeader, HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel, Field

from tollwatch.auth.identity import IdentityResolver, SupabaseIdentity
from tollwatch.config import config, Config
from tollwatch.errors import (
    AuthenticationError,
    InputError,
    NoticeNotFound,
    PersistenceUnavailable,
    TerminalError,
)
from tollwatch.fetch.diagnostics import DiagnosticsRecorder
from tollwatch.fetch.portal import PlaywrightPortalDriver
from tollwatch.fetch.rate_limit import SlidingWindowRateLimiter
from tollwatch.jobs.coalescer import RequestCoalescer
from tollwatch.jobs.engine import TollNoticeEngine
from tollwatch.parse.models import (
    AcquisitionResult,
    ListFilters,
    SortSpec,
    SourceTag,
    TollNotice,
    VehicleType,
)
from tollwatch.store.audit import AuditLog
from tollwatch.store.statistics import StatisticsAggregator
from tollwatch.store.supabase_store import ReconciliationStore

logger = logging.getLogger(__name__)

# API Key security (if configured)
API_KEY_HEADER = APIKeyHeader(name="X-API-KEY", auto_error=False)
BEARER = HTTPBearer(auto_error=False)


def verify_api_key(api_key: str = Depends(API_KEY_HEADER)) -> bool:
    """Verify API key if configured."""
    expected_key = config.API_KEY
    if expected_key:
        if not api_key or api_key != expected_key:
            raise HTTPException(status_code=403, detail="Invalid API key")
    return True


class SearchRequest(BaseModel):
    """Request model for a toll notice search. The tenant comes from the token."""
    licence_plate: str = Field(..., max_length=20)
    state: str = Field(..., max_length=10)
    toll_notice_number: Optional[str] = Field(default=None, max_length=100)
    is_motorcycle: bool = False
    source: SourceTag = SourceTag.API_SEARCH


def _notice_payload(notice: TollNotice) -> dict:
    return notice.model_dump(mode="json")


def _result_payload(result: AcquisitionResult) -> dict:
    outcome = result.save_outcome
    if outcome.schema_missing:
        message = (
            f"Found {result.totals.count} toll notice(s), but they could not be saved. "
            "The toll notices table has not been created yet."
        )
    elif result.totals.count == 0:
        message = "No toll notices found for this vehicle."
    else:
        message = (
            f"Found {result.totals.count} toll notice(s): {outcome.saved_count} saved, "
            f"{outcome.duplicate_count} already recorded."
        )
    return {
        "success": True,
        "notices": [_notice_payload(n) for n in result.notices],
        "totals": result.totals.model_dump(mode="json"),
        "formatted_totals": result.totals.formatted(),
        "saved_count": outcome.saved_count,
        "duplicate_count": outcome.duplicate_count,
        "needs_migration": outcome.schema_missing,
        "acquired_at": result.acquired_at.isoformat(),
        "message": message,
    }


def _parse_vehicle_type(value: Optional[str]) -> Optional[VehicleType]:
    if not value or value == "all":
        return None
    try:
        return VehicleType(value)
    except ValueError:
        raise InputError(f"Invalid vehicle type: {value}") from None


def create_app(
    engine: Optional[TollNoticeEngine] = None,
    identity: Optional[IdentityResolver] = None,
    rate_limiter: Optional[SlidingWindowRateLimiter] = None,
) -> FastAPI:
    """Build the app. Collaborators that are not injected are created on startup."""
    app = FastAPI(title="Toll Notice API", version="0.1.0")
    app.state.engine = engine
    app.state.identity = identity
    app.state.rate_limiter = rate_limiter or SlidingWindowRateLimiter()

    @app.on_event("startup")
    async def startup():
        """Initialize on startup."""
        if app.state.engine is None:
            Config.validate(require_supabase=True)
            store = ReconciliationStore()
            audit = AuditLog()
            await audit.initialize()
            app.state.engine = TollNoticeEngine(
                driver=PlaywrightPortalDriver(diagnostics=DiagnosticsRecorder()),
                store=store,
                statistics=StatisticsAggregator(store),
                coalescer=RequestCoalescer(),
                audit=audit,
            )
            if not await store.test_connection():
                logger.warning("Supabase connection test failed, but continuing...")
        if app.state.identity is None:
            app.state.identity = SupabaseIdentity()

    @app.on_event("shutdown")
    async def shutdown():
        if app.state.engine is not None:
            await app.state.engine.coalescer.shutdown()

    @app.exception_handler(InputError)
    async def input_error_handler(request: Request, exc: InputError):
        return JSONResponse(status_code=400, content={"success": False, "error": str(exc)})

    @app.exception_handler(AuthenticationError)
    async def auth_error_handler(request: Request, exc: AuthenticationError):
        return JSONResponse(status_code=401, content={"success": False, "error": str(exc)})

    @app.exception_handler(NoticeNotFound)
    async def not_found_handler(request: Request, exc: NoticeNotFound):
        return JSONResponse(status_code=404, content={"success": False, "error": str(exc)})

    @app.exception_handler(PersistenceUnavailable)
    async def persistence_handler(request: Request, exc: PersistenceUnavailable):
        return JSONResponse(
            status_code=503,
            content={
                "success": False,
                "error": "Toll notices table not found. Please run database migrations.",
                "needs_migration": True,
            },
        )

    @app.exception_handler(TerminalError)
    async def terminal_error_handler(request: Request, exc: TerminalError):
        status_code = 502 if exc.cause_kind == "structure" else 503
        return JSONResponse(
            status_code=status_code,
            content={
                "success": False,
                "error": exc.user_message,
                "attempts": exc.attempts,
                "cause_kind": exc.cause_kind,
            },
        )

    def get_engine() -> TollNoticeEngine:
        if app.state.engine is None:
            raise HTTPException(status_code=503, detail="Service not initialized")
        return app.state.engine

    async def current_owner(
        credentials: Optional[HTTPAuthorizationCredentials] = Depends(BEARER),
    ) -> str:
        if app.state.identity is None:
            raise HTTPException(status_code=503, detail="Service not initialized")
        token = credentials.credentials if credentials else None
        return await app.state.identity.resolve(token)

    @app.get("/health")
    async def health():
        """Health check endpoint (no auth required)."""
        engine = app.state.engine
        return {
            "status": "ok",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "supabase_connected": await engine.store.test_connection() if engine else False,
            "in_flight_searches": engine.coalescer.in_flight_count if engine else 0,
        }

    @app.post("/tolls/search")
    async def search_tolls(
        request: SearchRequest,
        owner: str = Depends(current_owner),
        engine: TollNoticeEngine = Depends(get_engine),
    ):
        """Search the toll portal for a vehicle and record new notices."""
        decision = await app.state.rate_limiter.check(owner)
        if not decision.allowed:
            return JSONResponse(
                status_code=429,
                content={
                    "success": False,
                    "error": "Too many toll searches. Please wait before trying again.",
                    "retry_after": round(decision.retry_after),
                },
                headers={"Retry-After": str(max(1, round(decision.retry_after)))},
            )

        result = await engine.search(
            owner,
            request.licence_plate,
            request.state,
            notice_number_hint=request.toll_notice_number,
            is_two_wheeler=request.is_motorcycle,
            source=request.source,
        )
        payload = _result_payload(result)
        payload["rate_limit_remaining"] = decision.remaining
        return payload

    @app.get("/tolls/search/cached")
    async def refine_tolls(
        licence_plate: str = Query(..., max_length=20),
        state: str = Query(..., max_length=10),
        toll_notice_number: Optional[str] = Query(default=None, max_length=100),
        is_motorcycle: bool = False,
        owner: str = Depends(current_owner),
        engine: TollNoticeEngine = Depends(get_engine),
    ):
        """Filter the last search result for this vehicle without re-querying the portal."""
        result = await engine.refine(owner, licence_plate, state, toll_notice_number, is_motorcycle)
        return _result_payload(result)

    @app.get("/tolls")
    async def list_tolls(
        licence_plate: Optional[str] = Query(default=None, max_length=20),
        status: str = "all",
        vehicle_type: Optional[str] = None,
        sort_by: str = "created_at",
        sort_order: str = "desc",
        owner: str = Depends(current_owner),
        engine: TollNoticeEngine = Depends(get_engine),
    ):
        """List this tenant's toll notices with dashboard statistics."""
        filters = ListFilters(
            plate=licence_plate or None,
            status=status,
            vehicle_type=_parse_vehicle_type(vehicle_type),
        )
        result = await engine.list(owner, filters, SortSpec(field=sort_by, order=sort_order))
        body = {
            "success": True,
            "notices": [_notice_payload(n) for n in result.records],
            "statistics": result.statistics.model_dump(mode="json"),
            "needs_migration": result.needs_migration,
        }
        if result.needs_migration:
            body["message"] = "Toll notices table not found. Please run database migrations."
        return body

    @app.post("/tolls/{notice_id}/paid")
    async def mark_toll_paid(
        notice_id: str,
        owner: str = Depends(current_owner),
        engine: TollNoticeEngine = Depends(get_engine),
    ):
        notice = await engine.mark_paid(owner, notice_id)
        return {"success": True, "notice": _notice_payload(notice)}

    @app.get("/admin/cache")
    async def cache_status(
        _: bool = Depends(verify_api_key),
        engine: TollNoticeEngine = Depends(get_engine),
    ):
        return engine.cache_status()

    @app.delete("/admin/cache")
    async def clear_cache(
        _: bool = Depends(verify_api_key),
        engine: TollNoticeEngine = Depends(get_engine),
    ):
        cleared = engine.clear_cache()
        return {"success": True, "cleared": cleared}

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
