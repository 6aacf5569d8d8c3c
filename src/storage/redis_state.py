"""
Redis state store for the collaboration safety state.

Redis holds the small, hot, shared switches every cycle reads:
- weighting enabled / independent routing
- fallback active (and since when)
- frozen agent pairs

Updates are read-modify-write under a Redis lock so that concurrent
cycles in different processes cannot interleave.
"""

import json
from typing import Callable, Optional
import structlog

import redis

from src.collaboration.safety import CollaborationSafetyState
from src.storage.repository import SafetyStateRepository

logger = structlog.get_logger(__name__)


class RedisStateStore(SafetyStateRepository):
    """
    Redis-backed SafetyStateRepository.

    Key naming convention:
    - eg:safety:state - Serialized CollaborationSafetyState
    - eg:lock:safety - Update lock
    """

    # Key prefixes
    PREFIX = "eg"
    SAFETY_KEY = f"{PREFIX}:safety:state"
    SAFETY_LOCK = f"{PREFIX}:lock:safety"

    def __init__(
        self,
        host: str = "localhost",
        port: int = 6379,
        db: int = 0,
        password: Optional[str] = None,
        socket_timeout: float = 5.0,
        lock_timeout: float = 10.0,
        client: Optional[redis.Redis] = None,
    ):
        """
        Initialize Redis connection.

        Args:
            host: Redis host
            port: Redis port
            db: Redis database number
            password: Redis password (optional)
            socket_timeout: Socket timeout in seconds
            lock_timeout: Seconds before an update lock expires
            client: Pre-built client (skips connecting)
        """
        self.lock_timeout = lock_timeout

        if client is not None:
            self.client = client
            return

        self.client = redis.Redis(
            host=host,
            port=port,
            db=db,
            password=password,
            socket_timeout=socket_timeout,
            decode_responses=True,  # Return strings, not bytes
        )

        # Test connection
        try:
            self.client.ping()
            logger.info(
                "redis_connected",
                host=host,
                port=port,
                db=db,
            )
        except redis.ConnectionError as e:
            logger.error("redis_connection_failed", error=str(e))
            raise

    def get(self) -> CollaborationSafetyState:
        """Current safety state; defaults when nothing is stored."""
        data = self.client.get(self.SAFETY_KEY)
        if not data:
            return CollaborationSafetyState()
        return CollaborationSafetyState.from_dict(json.loads(data))

    def update(
        self,
        transform: Callable[[CollaborationSafetyState], CollaborationSafetyState],
    ) -> CollaborationSafetyState:
        """Atomically apply transform to the stored state."""
        with self.client.lock(self.SAFETY_LOCK, timeout=self.lock_timeout):
            current = self.get()
            updated = transform(current)
            if updated != current:
                self.client.set(self.SAFETY_KEY, json.dumps(updated.to_dict(), sort_keys=True))
                logger.info("safety_state_updated", **updated.to_dict())
        return updated

    def reset(self) -> None:
        """Delete the stored state (back to defaults)."""
        self.client.delete(self.SAFETY_KEY)
        logger.info("safety_state_reset")
