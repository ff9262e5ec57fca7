"""
Generation quota ledger.
Tracks how many calaveras each email has generated and enforces the limit.
"""

import logging
from dataclasses import dataclass

from params_config import MAX_GENERATIONS
from db_store import Database, Transaction

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class QuotaUsage:
    """Read-only snapshot of an identity's quota."""
    identity: str
    used: int
    limit: int

    @property
    def remaining(self) -> int:
        return max(0, self.limit - self.used)

    @property
    def exhausted(self) -> bool:
        return self.used >= self.limit

    def to_dict(self) -> dict:
        return {
            "email": self.identity,
            "used": self.used,
            "limit": self.limit,
            "remaining": self.remaining,
            "quota_exhausted": self.exhausted,
        }


class QuotaLedger:
    """
    Durable per-identity generation counter.

    read_count_for_update() and upsert_increment() must run inside the same
    transaction as the threshold check: the row lock taken by the first is
    what keeps two concurrent requests for one email from both passing.
    """

    def __init__(self, db: Database, max_generations: int = MAX_GENERATIONS):
        self.db = db
        self.max_generations = max_generations

    def read_count_for_update(self, tx: Transaction, identity: str) -> int:
        """Lock the identity's entry for the rest of `tx` and return its count (0 if new)."""
        count = self.db.lock_ledger_entry(tx, identity)
        logger.debug(f"Ledger locked for {identity}: {count}/{self.max_generations}")
        return count

    def upsert_increment(self, tx: Transaction, identity: str) -> int:
        """Add one generation for `identity` inside `tx`. Returns the new count."""
        return self.db.increment_ledger_entry(tx, identity)

    def is_exhausted(self, count: int) -> bool:
        return count >= self.max_generations

    def get_usage(self, identity: str) -> QuotaUsage:
        """Committed usage for `identity`, without locking."""
        used = self.db.get_ledger_count(identity)
        return QuotaUsage(identity=identity, used=used, limit=self.max_generations)
