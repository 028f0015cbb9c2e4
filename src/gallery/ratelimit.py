"""Rate limiting: slowapi for uploads, a shared fixed-window counter for search."""

from fastapi import Request
from slowapi import Limiter
from slowapi.util import get_remote_address

from gallery.errors import RateLimitExceededError
from gallery.kvstore import KeyValueStore


limiter = Limiter(key_func=get_remote_address)


def client_identity(request: Request) -> str:
    """Key used to bucket search requests per caller."""
    return get_remote_address(request) or "anonymous"


class RateLimiter:
    """Fixed-window counter stored in a KeyValueStore so all instances share one budget."""

    def __init__(self, store: KeyValueStore, limit: int, window: int, prefix: str = "ratelimit:search:"):
        if limit <= 0 or window <= 0:
            raise ValueError("limit and window must be positive")
        self.store = store
        self.limit = int(limit)
        self.window = int(window)
        self.prefix = prefix

    def hit(self, client_id: str) -> int:
        """Count one request for client_id; raise once the window's budget is spent."""
        count, retry_after = self.store.increment_with_expiry(f"{self.prefix}{client_id}", self.window)
        if count > self.limit:
            raise RateLimitExceededError(client_id, self.limit, retry_after)
        return count
