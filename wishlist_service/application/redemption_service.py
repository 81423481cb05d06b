"""Application layer - One-time QR redemption.

A POS terminal scans a token and claims the wishlist behind it. Terminals
do not share memory, so the claim is a single conditional UPDATE and the
database decides the winner. The pre-checks below only produce precise
errors for the common cases; they are never what makes the claim safe.
"""

from collections.abc import Callable
from datetime import datetime
from typing import Final

from sqlmodel import Session

from ..domain.clock import utc_now
from ..domain.constants import WishlistStatus
from ..domain.entities import Wishlist
from ..domain.exceptions import (
    ConflictError,
    DomainError,
    ExpiredError,
    ForbiddenError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from ..infrastructure.database.repositories import WishlistRepository
from ..logging_config import get_logger
from ..logging_utils import log_wishlist_transition, redact_token
from ..metrics import record_redemption, record_transition

logger: Final = get_logger(__name__)


class RedemptionService:
    """Application service guarding at-most-once QR token redemption."""

    def __init__(
        self, session: Session, clock: Callable[[], datetime] = utc_now
    ) -> None:
        self.repo = WishlistRepository(session)
        self.clock = clock

    def redeem(self, qr_token: str | None, wishlist_id: str | None = None) -> Wishlist:
        """Claim the wishlist behind ``qr_token`` and move it to PROCESSING.

        Side effect: a wishlist found past its expiry is persisted as EXPIRED.

        Raises:
            ValidationError: If the token is missing or blank
            NotFoundError: If no wishlist carries the token
            ForbiddenError: If ``wishlist_id`` is given and does not own the token
            ConflictError: If the token was already redeemed (carries ``used_at``)
            ExpiredError: If the wishlist is past its expiry (carries ``expired_at``)
            InvalidStateError: If the wishlist is no longer ACTIVE
        """
        try:
            wishlist = self._redeem(qr_token, wishlist_id)
        except DomainError as e:
            record_redemption(e.code)
            logger.info(
                "QR redemption refused",
                token=redact_token(qr_token),
                wishlist_id=wishlist_id,
                reason=e.code,
            )
            raise

        record_redemption("success")
        record_transition(WishlistStatus.PROCESSING)
        log_wishlist_transition(
            wishlist.id, WishlistStatus.ACTIVE, WishlistStatus.PROCESSING, actor="POS"
        )
        return wishlist

    def _redeem(self, qr_token: str | None, wishlist_id: str | None) -> Wishlist:
        if not isinstance(qr_token, str) or not qr_token.strip():
            raise ValidationError("qr_token is required")

        wishlist = self.repo.find_by_token(qr_token.strip())
        if wishlist is None:
            raise NotFoundError("QR token not found")
        if wishlist_id is not None and wishlist.id != wishlist_id:
            raise ForbiddenError("QR token is not valid for this wishlist")

        now = self.clock()
        self._ensure_redeemable(wishlist, now)

        claimed = self.repo.mark_redeemed(wishlist.id, now)
        current = self.repo.find_by_id(wishlist.id)
        if current is None:
            raise NotFoundError("QR token not found")
        if claimed:
            return current

        # Lost the race: classify against what the winner wrote
        self._ensure_redeemable(current, now)
        raise InvalidStateError(f"Wishlist is {current.status}, it cannot be redeemed")

    def _ensure_redeemable(self, wishlist: Wishlist, now: datetime) -> None:
        if wishlist.qr_token_used_at is not None:
            raise ConflictError(
                "QR code has already been used", used_at=wishlist.qr_token_used_at
            )
        if wishlist.is_expired(now):
            if self.repo.expire_if_active(wishlist.id, now):
                record_transition(WishlistStatus.EXPIRED)
                log_wishlist_transition(
                    wishlist.id, wishlist.status, WishlistStatus.EXPIRED, actor="system"
                )
            raise ExpiredError("QR code has expired", expired_at=wishlist.expires_at)
        if wishlist.status != WishlistStatus.ACTIVE:
            raise InvalidStateError(
                f"Wishlist is {wishlist.status}, it cannot be redeemed"
            )
