"""Configuration management from environment variables."""
import os
from pathlib import Path
from dotenv import load_dotenv

# Load .env file
load_dotenv()

# Project root
PROJECT_ROOT = Path(__file__).parent.parent
DATA_DIR = Path(os.getenv("DATA_DIR", str(PROJECT_ROOT / "data")))
DEBUG_DIR = DATA_DIR / "debug"
AUDIT_DB = DATA_DIR / "audit.db"

# Ensure directories exist
DATA_DIR.mkdir(parents=True, exist_ok=True)
DEBUG_DIR.mkdir(exist_ok=True)


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


class Config:
    """Application configuration."""

    # Toll portal
    PORTAL_URL: str = os.getenv("PORTAL_URL", "https://tollnotice.linkt.com.au/Search.asp")
    PORTAL_HEADLESS: bool = _env_bool("PORTAL_HEADLESS", "true")
    PORTAL_USER_AGENT: str = os.getenv(
        "PORTAL_USER_AGENT",
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
    )
    # Sub-timeouts, seconds
    PORTAL_NAVIGATION_TIMEOUT: float = float(os.getenv("PORTAL_NAVIGATION_TIMEOUT", "20"))
    PORTAL_SHELL_TIMEOUT: float = float(os.getenv("PORTAL_SHELL_TIMEOUT", "10"))
    PORTAL_RESULT_TIMEOUT: float = float(os.getenv("PORTAL_RESULT_TIMEOUT", "20"))

    # Search retry policy
    SEARCH_MAX_ATTEMPTS: int = int(os.getenv("SEARCH_MAX_ATTEMPTS", "2"))
    SEARCH_BASE_DELAY: float = float(os.getenv("SEARCH_BASE_DELAY", "2.0"))
    SEARCH_DEADLINE: float = float(os.getenv("SEARCH_DEADLINE", "90"))
    STRUCTURE_RETRY_LIMIT: int = int(os.getenv("STRUCTURE_RETRY_LIMIT", "1"))

    # Supabase
    SUPABASE_URL: str | None = os.getenv("SUPABASE_URL")
    SUPABASE_SERVICE_ROLE: str | None = os.getenv("SUPABASE_SERVICE_ROLE")
    TOLL_TABLE: str = os.getenv("TOLL_TABLE", "toll_notices")
    STATISTICS_FUNCTION: str = os.getenv("STATISTICS_FUNCTION", "get_user_toll_statistics")

    # Search rate limit (applied by the HTTP layer, not the engine)
    SEARCH_RATE_LIMIT: int = int(os.getenv("SEARCH_RATE_LIMIT", "5"))
    SEARCH_RATE_WINDOW: float = float(os.getenv("SEARCH_RATE_WINDOW", "300"))

    # Audit
    AUDIT_ENABLED: bool = _env_bool("AUDIT_ENABLED", "true")

    # Logging
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")

    # API Security
    API_KEY: str | None = os.getenv("API_KEY")

    @classmethod
    def validate(cls, require_supabase: bool = True) -> None:
        """Validate required configuration."""
        errors = []
        if require_supabase:
            if not cls.SUPABASE_URL:
                errors.append("SUPABASE_URL is required")
            if not cls.SUPABASE_SERVICE_ROLE:
                errors.append("SUPABASE_SERVICE_ROLE is required")
        if cls.SEARCH_MAX_ATTEMPTS < 1:
            errors.append("SEARCH_MAX_ATTEMPTS must be at least 1")
        if cls.SEARCH_BASE_DELAY < 0:
            errors.append("SEARCH_BASE_DELAY must not be negative")
        if cls.SEARCH_DEADLINE <= 0:
            errors.append("SEARCH_DEADLINE must be positive")
        if errors:
            raise ValueError(f"Configuration errors: {', '.join(errors)}")


config = Config()
