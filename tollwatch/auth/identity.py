"""Resolve bearer tokens to tenant ids through Supabase auth."""
import asyncio
import logging
import time
from typing import Callable, Optional, Protocol

from supabase import Client, create_client

from tollwatch.config import config
from tollwatch.errors import AuthenticationError

logger = logging.getLogger(__name__)


class IdentityResolver(Protocol):
    async def resolve(self, token: Optional[str]) -> str:
        ...


class SupabaseIdentity:
    """Validates access tokens with auth.get_user, caching hits briefly."""

    def __init__(
        self,
        client: Optional[Client] = None,
        cache_seconds: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        if client is None:
            if not config.SUPABASE_URL or not config.SUPABASE_SERVICE_ROLE:
                raise ValueError("Supabase configuration missing")
            client = create_client(config.SUPABASE_URL, config.SUPABASE_SERVICE_ROLE)
        self.client = client
        self.cache_seconds = cache_seconds
        self.clock = clock
        self._cache: dict[str, tuple[str, float]] = {}

    async def resolve(self, token: Optional[str]) -> str:
        if not token:
            raise AuthenticationError("Authentication required")

        now = self.clock()
        self._evict_expired(now)
        cached = self._cache.get(token)
        if cached:
            return cached[0]

        loop = asyncio.get_event_loop()
        try:
            response = await loop.run_in_executor(None, self.client.auth.get_user, token)
        except Exception as e:
            logger.warning(f"Token validation failed: {e}")
            raise AuthenticationError("Invalid or expired token") from e

        user = getattr(response, "user", None)
        if user is None or not getattr(user, "id", None):
            raise AuthenticationError("Invalid or expired token")

        self._cache[token] = (str(user.id), now)
        return str(user.id)

    def _evict_expired(self, now: float) -> None:
        expired = [t for t, (_, seen) in self._cache.items() if now - seen >= self.cache_seconds]
        for token in expired:
            del self._cache[token]
