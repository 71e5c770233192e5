"""Data models for toll notice acquisition."""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from tollwatch.errors import InputError

CENT = Decimal("0.01")
ZERO = Decimal("0.00")


def to_money(value: Any) -> Decimal:
    """Coerce a stored numeric value to a cent-quantized Decimal."""
    if value is None:
        return ZERO
    return Decimal(str(value)).quantize(CENT)


class Jurisdiction(str, Enum):
    NSW = "NSW"
    VIC = "VIC"
    QLD = "QLD"
    WA = "WA"
    SA = "SA"
    TAS = "TAS"
    ACT = "ACT"
    NT = "NT"


class VehicleType(str, Enum):
    CAR = "car"
    MOTORCYCLE = "motorcycle"


class SourceTag(str, Enum):
    """Where a persisted notice came from (stored as search_source)."""

    MANUAL = "manual"
    API_SEARCH = "api_search"
    RENTAL_SEARCH = "rental_search"


class SearchQuery(BaseModel):
    """One validated search request."""

    model_config = ConfigDict(frozen=True)

    plate: str = Field(..., min_length=4, max_length=7, pattern=r"^[A-Z0-9]+$")
    jurisdiction: Jurisdiction
    notice_number_hint: Optional[str] = None
    is_two_wheeler: bool = False

    @property
    def vehicle_type(self) -> VehicleType:
        return VehicleType.MOTORCYCLE if self.is_two_wheeler else VehicleType.CAR


class TollNotice(BaseModel):
    """A single toll notice, normalized from the portal or loaded from the store."""

    model_config = ConfigDict(frozen=True)

    id: Optional[str] = None
    plate: str
    jurisdiction: Jurisdiction
    notice_number: Optional[str] = None
    motorway: str
    issued_date: str
    due_date: str
    due_date_inferred: bool = False
    trip_status: str
    admin_fee: Decimal = Field(default=ZERO, ge=0)
    toll_amount: Decimal = Field(default=ZERO, ge=0)
    total_amount: Decimal = Field(default=ZERO, ge=0)
    is_paid: bool = False
    vehicle_type: VehicleType = VehicleType.CAR
    source: SourceTag = SourceTag.API_SEARCH
    owner_id: Optional[str] = None
    created_at: Optional[datetime] = None

    @model_validator(mode="after")
    def _check_total(self) -> "TollNotice":
        expected = (self.admin_fee + self.toll_amount).quantize(CENT)
        if self.total_amount.quantize(CENT) != expected:
            raise ValueError(
                f"total_amount {self.total_amount} != admin_fee + toll_amount ({expected})"
            )
        return self

    @property
    def natural_key(self) -> tuple:
        return (
            self.plate,
            self.motorway,
            self.issued_date,
            self.toll_amount.quantize(CENT),
            self.admin_fee.quantize(CENT),
            self.owner_id,
        )

    def to_row(self) -> dict[str, Any]:
        """Column mapping for the toll_notices table."""
        return {
            "licence_plate": self.plate,
            "state": self.jurisdiction.value,
            "toll_notice_number": self.notice_number,
            "motorway": self.motorway,
            "issued_date": self.issued_date,
            "trip_status": self.trip_status,
            "admin_fee": float(self.admin_fee),
            "toll_amount": float(self.toll_amount),
            "total_amount": float(self.total_amount),
            "due_date": self.due_date,
            "due_date_inferred": self.due_date_inferred,
            "is_paid": self.is_paid,
            "vehicle_type": self.vehicle_type.value,
            "search_source": self.source.value,
            "user_id": self.owner_id,
        }

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "TollNotice":
        """Build from a stored row. Rows may be entered by hand, so casing and the total are normalized."""
        admin_fee = to_money(row.get("admin_fee"))
        toll_amount = to_money(row.get("toll_amount"))
        issued_date = row.get("issued_date") or ""
        return cls(
            id=str(row["id"]) if row.get("id") is not None else None,
            plate=str(row["licence_plate"]).strip().upper(),
            jurisdiction=str(row.get("state") or "").strip().upper(),
            notice_number=row.get("toll_notice_number") or None,
            motorway=row.get("motorway") or "",
            issued_date=issued_date,
            due_date=row.get("due_date") or issued_date,
            due_date_inferred=bool(row.get("due_date_inferred", False)),
            trip_status=row.get("trip_status") or "",
            admin_fee=admin_fee,
            toll_amount=toll_amount,
            total_amount=admin_fee + toll_amount,
            is_paid=bool(row.get("is_paid", False)),
            vehicle_type=str(row.get("vehicle_type") or VehicleType.CAR.value).strip().lower(),
            source=row.get("search_source") or SourceTag.MANUAL,
            owner_id=row.get("user_id"),
            created_at=row.get("created_at"),
        )


class Totals(BaseModel):
    """Aggregate amounts for a set of notices."""

    model_config = ConfigDict(frozen=True)

    admin_fee: Decimal = ZERO
    toll_amount: Decimal = ZERO
    payable: Decimal = ZERO
    count: int = 0

    def formatted(self) -> dict[str, str]:
        return {
            "admin_fee": f"${self.admin_fee:.2f}",
            "toll_amount": f"${self.toll_amount:.2f}",
            "payable": f"${self.payable:.2f}",
        }


class SaveOutcome(BaseModel):
    model_config = ConfigDict(frozen=True)

    saved_count: int = 0
    duplicate_count: int = 0
    schema_missing: bool = False


class AcquisitionResult(BaseModel):
    """Resolved outcome of one coalesced search, shared by every waiter."""

    model_config = ConfigDict(frozen=True)

    notices: tuple[TollNotice, ...] = ()
    totals: Totals = Field(default_factory=Totals)
    save_outcome: SaveOutcome = Field(default_factory=SaveOutcome)
    acquired_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass(frozen=True)
class RawPortalResult:
    """What the portal driver hands to the parser."""

    final_url: str
    table_html: Optional[str] = None
    no_results: bool = False

    @classmethod
    def empty(cls, final_url: str) -> "RawPortalResult":
        return cls(final_url=final_url, table_html=None, no_results=True)


class Statistics(BaseModel):
    """Dashboard summary for one tenant."""

    model_config = ConfigDict(extra="ignore")

    total_notices: int = 0
    total_amount: Decimal = ZERO
    paid_notices: int = 0
    unpaid_notices: int = 0
    overdue_notices: int = 0
    unpaid_amount: Decimal = ZERO
    overdue_amount: Decimal = ZERO
    admin_fees: Decimal = ZERO
    toll_fees: Decimal = ZERO
    source: str = "computed"


STATUS_FILTERS = ("all", "paid", "unpaid")
SORTABLE_FIELDS = ("created_at", "licence_plate", "motorway", "issued_date", "total_amount", "is_paid")
SORT_ORDERS = ("asc", "desc")


@dataclass(frozen=True)
class ListFilters:
    plate: Optional[str] = None
    status: str = "all"
    vehicle_type: Optional[VehicleType] = None

    def __post_init__(self):
        if self.status not in STATUS_FILTERS:
            raise InputError(f"Invalid status filter: {self.status}")

    @property
    def is_active(self) -> bool:
        return bool(self.plate) or self.status != "all" or self.vehicle_type is not None


@dataclass(frozen=True)
class SortSpec:
    """Sort request; only allow-listed columns are accepted."""

    field: str = "created_at"
    order: str = "desc"

    def __post_init__(self):
        if self.field not in SORTABLE_FIELDS:
            raise InputError(f"Invalid sort field: {self.field}")
        if self.order not in SORT_ORDERS:
            raise InputError(f"Invalid sort order: {self.order}")

    @property
    def ascending(self) -> bool:
        return self.order == "asc"


@dataclass
class ListResult:
    records: list[TollNotice] = field(default_factory=list)
    statistics: Statistics = field(default_factory=Statistics)
    needs_migration: bool = False
