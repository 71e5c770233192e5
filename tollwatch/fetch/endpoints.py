"""Portal URLs, form selectors and label tables for the Linkt toll notice search."""
from tollwatch.config import config
from tollwatch.parse.models import Jurisdiction

# Portal's own labels for the "state registered" dropdown
JURISDICTION_LABELS: dict[Jurisdiction, str] = {
    Jurisdiction.NSW: "New South Wales",
    Jurisdiction.VIC: "Victoria",
    Jurisdiction.QLD: "Queensland",
    Jurisdiction.WA: "Western Australia",
    Jurisdiction.SA: "South Australia",
    Jurisdiction.TAS: "Tasmania",
    Jurisdiction.ACT: "Australian Capital Territory",
    Jurisdiction.NT: "Northern Territory",
}

PLATE_INPUT = '[name="txtRegistrationNumber"]'
STATE_SELECT = '[name="cboStateRegistered"]'
NOTICE_NUMBER_INPUT = '[name="txttollNoticeNumber"]'
MOTORBIKE_CHECKBOX = '[name="chkMotorbike"]'
SUBMIT_BUTTON = 'button[type="submit"]:has-text("Search for toll notices")'
RESULTS_TABLE = "table#additionalResults"

BROWSER_ARGS = [
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--disable-dev-shm-usage",
    "--disable-gpu",
    "--no-first-run",
    "--disable-background-timer-throttling",
    "--disable-backgrounding-occluded-windows",
    "--disable-renderer-backgrounding",
]

EXTRA_HEADERS = {
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,image/webp,*/*;q=0.8",
    "Accept-Language": "en-AU,en;q=0.5",
    "DNT": "1",
    "Upgrade-Insecure-Requests": "1",
}

VIEWPORT = {"width": 1366, "height": 768}


def get_search_url() -> str:
    return config.PORTAL_URL


def get_state_label(jurisdiction: Jurisdiction) -> str:
    return JURISDICTION_LABELS[jurisdiction]
