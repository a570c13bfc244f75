import redis


class IdempotencyStore:
    """Remembers event keys for ttl seconds; first writer wins."""

    def __init__(self, client: redis.Redis, default_ttl: int, *, prefix: str = "idempotency") -> None:
        self.client = client
        self.default_ttl = default_ttl
        self.prefix = prefix

    def check_and_set(self, key: str, ttl_seconds: int | None = None) -> bool:
        """Atomic operation: setnx + expire in one call. True if the key was new."""
        ttl = ttl_seconds if ttl_seconds is not None else self.default_ttl
        created = self.client.set(f"{self.prefix}:{key}", "1", nx=True, ex=ttl)
        return bool(created)

    def release(self, key: str) -> None:
        """Forget a key so a failed delivery can be retried."""
        self.client.delete(f"{self.prefix}:{key}")
