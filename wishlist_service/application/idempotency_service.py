"""Application layer - Idempotency ledger.

Retried create requests carrying the same key must not create a second
wishlist. The ledger row is inserted before any work happens; the unique
constraint on the key decides which of two concurrent requests proceeds.
"""

import hashlib
import json
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Final

from sqlmodel import Session

from ..domain.clock import utc_now
from ..domain.constants import IdempotencyStatus, OperationType
from ..domain.exceptions import ConflictError
from ..infrastructure.database.repositories import IdempotencyRepository
from ..logging_config import get_logger
from ..metrics import record_idempotent_replay

logger: Final = get_logger(__name__)


def fingerprint(payload: Any) -> str:
    """Stable hash of a request body, independent of key order."""
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class LedgerDecision:
    """Outcome of consulting the ledger: run the operation or replay a response."""

    replay_response: dict[str, Any] | None = None

    @classmethod
    def fresh(cls) -> "LedgerDecision":
        return cls()

    @classmethod
    def replay(cls, response: dict[str, Any]) -> "LedgerDecision":
        return cls(replay_response=response)


class IdempotencyLedger:
    """Application service guarding operations with caller-supplied keys."""

    def __init__(
        self, session: Session, clock: Callable[[], datetime] = utc_now
    ) -> None:
        self.repo = IdempotencyRepository(session)
        self.clock = clock

    def begin_or_replay(
        self, key: str, operation_type: OperationType, request_fingerprint: str
    ) -> LedgerDecision:
        """Claim ``key`` for a new operation, or return the cached response.

        Raises:
            ConflictError: If the key is still in flight, or was completed for
                a different request body
        """
        existing = self.repo.find(key)

        if existing is None:
            # A concurrent insert of the same key surfaces as ConflictError
            self.repo.insert(key, operation_type, request_fingerprint)
            logger.debug("Idempotency key claimed", key=key, operation=operation_type)
            return LedgerDecision.fresh()

        if existing.is_completed():
            if existing.request_fingerprint != request_fingerprint:
                logger.warning("Idempotency key reused with a different body", key=key)
                raise ConflictError(
                    "Idempotency key was already used for a different request"
                )
            logger.info(
                "Replaying completed request",
                key=key,
                wishlist_id=existing.wishlist_id,
            )
            record_idempotent_replay(operation_type)
            return LedgerDecision.replay(existing.cached_response or {})

        if existing.status == IdempotencyStatus.FAILED:
            if self.repo.reopen(key, request_fingerprint, self.clock()):
                logger.info("Retrying previously failed request", key=key)
                return LedgerDecision.fresh()

        raise ConflictError("Request is already being processed")

    def complete(
        self, key: str, response: dict[str, Any], wishlist_id: str | None
    ) -> None:
        """Store the response so later retries replay it."""
        if not self.repo.complete(key, response, wishlist_id, self.clock()):
            logger.warning("Idempotency key was not in flight on completion", key=key)

    def fail(self, key: str) -> None:
        """Release the key after a failed operation so it may be retried."""
        if self.repo.fail(key, self.clock()):
            logger.info("Idempotency key marked failed", key=key)
