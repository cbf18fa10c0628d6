"""Per-IP burst limiting for upload endpoints using slowapi."""

from slowapi import Limiter
from slowapi.util import get_remote_address

# IP-based limiter guarding the upload route against bursts. Per-user
# consumption limits are enforced by the quota ledger instead.
limiter = Limiter(key_func=get_remote_address)


def reset_limiter() -> None:
    """Reset the limiter storage. Used in tests to clear rate limit state."""
    limiter.reset()
