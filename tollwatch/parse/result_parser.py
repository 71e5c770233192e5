"""Normalize the portal's results table into TollNotice records."""
import logging
import re
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Iterable

from selectolax.parser import HTMLParser, Node

from tollwatch.errors import PortalStructureError
from tollwatch.fetch.endpoints import RESULTS_TABLE
from tollwatch.parse.models import (
    CENT,
    ZERO,
    RawPortalResult,
    SearchQuery,
    SourceTag,
    TollNotice,
    Totals,
)
from tollwatch.parse.page_state import is_no_results_page

logger = logging.getLogger(__name__)

# Fixed column positions in table#additionalResults
COL_PLATE = 1
COL_MOTORWAY = 2
COL_ISSUED = 3
COL_STATUS = 4
COL_ADMIN_FEE = 5
COL_TOLL = 6
MIN_COLUMNS = 7

MISSING = "N/A"


@dataclass
class ParsedBatch:
    notices: list[TollNotice] = field(default_factory=list)
    totals: Totals = field(default_factory=Totals)


def parse_currency(text: str | None) -> Decimal:
    """'$1,234.50' -> Decimal('1234.50'). Anything unparseable is zero."""
    cleaned = re.sub(r"[^0-9.]", "", text or "")
    if not cleaned:
        return ZERO
    try:
        return Decimal(cleaned).quantize(CENT)
    except InvalidOperation:
        logger.debug(f"Unparseable currency cell: {text!r}")
        return ZERO


def compute_totals(notices: Iterable[TollNotice]) -> Totals:
    admin_fee = ZERO
    toll_amount = ZERO
    count = 0
    for notice in notices:
        admin_fee += notice.admin_fee
        toll_amount += notice.toll_amount
        count += 1
    return Totals(
        admin_fee=admin_fee,
        toll_amount=toll_amount,
        payable=admin_fee + toll_amount,
        count=count,
    )


def _cell_text(cell: Node) -> str:
    return " ".join(cell.text(separator=" ").split())


def _status_text(cell: Node) -> str:
    abbr = cell.css_first("abbr")
    if abbr is not None:
        text = _cell_text(abbr)
        if text:
            return text
    return _cell_text(cell)


def _row_to_notice(cells: list[Node], query: SearchQuery, source: SourceTag) -> TollNotice:
    plate = re.sub(r"\s+", "", _cell_text(cells[COL_PLATE]).upper()) or query.plate
    issued_date = _cell_text(cells[COL_ISSUED]) or MISSING
    admin_fee = parse_currency(cells[COL_ADMIN_FEE].text())
    toll_amount = parse_currency(cells[COL_TOLL].text())
    return TollNotice(
        plate=plate,
        jurisdiction=query.jurisdiction,
        notice_number=query.notice_number_hint,
        motorway=_cell_text(cells[COL_MOTORWAY]) or MISSING,
        issued_date=issued_date,
        # The search view has no due date column
        due_date=issued_date,
        due_date_inferred=True,
        trip_status=_status_text(cells[COL_STATUS]) or MISSING,
        admin_fee=admin_fee,
        toll_amount=toll_amount,
        total_amount=admin_fee + toll_amount,
        is_paid=False,
        vehicle_type=query.vehicle_type,
        source=source,
    )


def parse(raw: RawPortalResult, query: SearchQuery, source: SourceTag = SourceTag.API_SEARCH) -> ParsedBatch:
    """Convert raw portal markup into notices plus totals in one pass."""
    if raw.no_results:
        return ParsedBatch()
    if not raw.table_html:
        raise PortalStructureError("Portal result carried no table markup", url=raw.final_url)

    parser = HTMLParser(raw.table_html)
    table = parser.css_first(RESULTS_TABLE) or parser.css_first("table")
    if table is None:
        raise PortalStructureError("Results markup contains no table", url=raw.final_url)

    rows = table.css("tbody tr") or table.css("tr")
    data_rows = [row for row in rows if row.css_first("td") is not None]
    notices: list[TollNotice] = []
    dropped = 0
    for row in data_rows:
        cells = row.css("td")
        if len(cells) < MIN_COLUMNS:
            dropped += 1
            continue
        notices.append(_row_to_notice(cells, query, source))

    if data_rows and not notices:
        if is_no_results_page(_cell_text(table)):
            logger.info(f"Results table only carries a no-results message for plate {query.plate}")
            return ParsedBatch()
        raise PortalStructureError(
            f"None of {len(data_rows)} result rows had the expected {MIN_COLUMNS} columns",
            url=raw.final_url,
        )
    if dropped:
        logger.warning(f"Dropped {dropped} short row(s) from results for plate {query.plate}")

    totals = compute_totals(notices)
    logger.info(
        f"Parsed {len(notices)} notice(s) for plate {query.plate}, "
        f"total payable {totals.formatted()['payable']}"
    )
    return ParsedBatch(notices=notices, totals=totals)
