"""Recognize terminal portal page states from rendered text."""
import re
import logging

logger = logging.getLogger(__name__)

# Any one of these, case-insensitive, means the search completed with nothing found
NO_RESULTS_PHRASES = (
    "no toll notices were found",
    "sorry, no trip",
    "no trip",
)

BLOCKED_INDICATORS = [
    r"access denied",
    r"request unsuccessful",
    r"incapsula incident",
    r"verify you are (a )?human",
    r"captcha",
]


def is_no_results_page(body_text: str | None) -> bool:
    if not body_text:
        return False
    text = body_text.lower()
    return any(phrase in text for phrase in NO_RESULTS_PHRASES)


def is_blocked_page(body_text: str | None) -> bool:
    """
    Detect the portal's anti-automation interstitial.
    One indicator is enough; these never appear on a genuine results page.
    """
    if not body_text:
        return False
    text = body_text.lower()
    for pattern in BLOCKED_INDICATORS:
        if re.search(pattern, text):
            logger.debug(f"Blocked page indicator matched: {pattern}")
            return True
    return False
