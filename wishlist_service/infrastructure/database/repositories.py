"""Infrastructure layer - Repository implementations.

Every state transition that can race with another request is a single
conditional UPDATE; the returned row count tells the caller whether it won.
"""

from collections.abc import Sequence
from datetime import datetime
from typing import Any

from sqlalchemy import delete, func, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import selectinload
from sqlmodel import Session, select

from ...domain.constants import (
    IdempotencyStatus,
    OperationType,
    WishlistSource,
    WishlistStatus,
)
from ...domain.entities import IdempotencyRecord as DomainIdempotencyRecord
from ...domain.entities import Wishlist as DomainWishlist
from ...domain.entities import WishlistItem as DomainWishlistItem
from ...domain.exceptions import ConflictError
from .models import IdempotencyRecord as IdempotencyModel
from .models import Wishlist as WishlistModel
from .models import WishlistItem as WishlistItemModel


class WishlistRepository:
    """Repository for Wishlist and WishlistItem persistence operations."""

    def __init__(self, session: Session):
        self.session = session

    def _run_update(self, statement) -> int:
        result = self.session.exec(  # type: ignore[call-overload]
            statement.execution_options(synchronize_session=False)
        )
        return int(result.rowcount)

    def add(self, domain_wishlist: DomainWishlist) -> DomainWishlist:
        """Insert a wishlist and its items in one transaction."""
        wishlist_model = WishlistModel.from_domain(domain_wishlist)
        wishlist_model.items = [
            WishlistItemModel.from_domain(item, wishlist_model.id)
            for item in domain_wishlist.items
        ]
        self.session.add(wishlist_model)

        try:
            self.session.commit()
        except IntegrityError:
            self.session.rollback()
            raise

        self.session.refresh(wishlist_model)
        return wishlist_model.to_domain()

    def find_by_id(
        self, wishlist_id: str, owner_id: str | None = None
    ) -> DomainWishlist | None:
        """Find wishlist with items by ID, optionally restricted to an owner."""
        statement = (
            select(WishlistModel)
            .options(selectinload(WishlistModel.items))  # type: ignore[arg-type]
            .where(WishlistModel.id == wishlist_id)
            .execution_options(populate_existing=True)
        )
        if owner_id is not None:
            statement = statement.where(WishlistModel.owner_id == owner_id)
        wishlist_model = self.session.exec(statement).first()
        return wishlist_model.to_domain() if wishlist_model else None

    def find_by_token(self, qr_token: str) -> DomainWishlist | None:
        """Find wishlist with items by its QR token."""
        wishlist_model = self.session.exec(
            select(WishlistModel)
            .options(selectinload(WishlistModel.items))  # type: ignore[arg-type]
            .where(WishlistModel.qr_token == qr_token)
            .execution_options(populate_existing=True)
        ).first()
        return wishlist_model.to_domain() if wishlist_model else None

    def search(
        self,
        owner_id: str | None = None,
        status: WishlistStatus | None = None,
        source: WishlistSource | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[DomainWishlist], int]:
        """Filter wishlists, newest first. Returns (page, total count)."""
        filters: list[Any] = []
        if owner_id is not None:
            filters.append(WishlistModel.owner_id == owner_id)
        if status is not None:
            filters.append(WishlistModel.status == status)
        if source is not None:
            filters.append(WishlistModel.source == source)

        count_statement = select(func.count()).select_from(WishlistModel)
        page_statement = select(WishlistModel).options(
            selectinload(WishlistModel.items)  # type: ignore[arg-type]
        )
        if filters:
            count_statement = count_statement.where(*filters)
            page_statement = page_statement.where(*filters)

        total = self.session.exec(count_statement).one()
        rows: Sequence[WishlistModel] = self.session.exec(
            page_statement.order_by(
                WishlistModel.created_at.desc(),  # type: ignore[attr-defined]
                WishlistModel.id,
            )
            .offset(offset)
            .limit(limit)
            .execution_options(populate_existing=True)
        ).all()
        return [row.to_domain() for row in rows], int(total)

    def replace_items(
        self,
        wishlist_id: str,
        items: list[DomainWishlistItem] | None,
        now: datetime,
        metadata: dict[str, Any] | None = None,
    ) -> bool:
        """Delete all items and insert ``items``, only while the wishlist is ACTIVE.

        ``items=None`` keeps the current items and only touches the metadata.

        The conditional touch of the wishlist row and the item swap share one
        transaction, so a concurrent redemption either happens before (and the
        swap is refused) or after (and sees the new items).

        Returns:
            True if the items were replaced, False if the wishlist was not ACTIVE
        """
        values: dict[str, Any] = {"updated_at": now}
        if metadata is not None:
            values["wishlist_metadata"] = dict(metadata)

        touched = self._run_update(
            update(WishlistModel)
            .where(
                WishlistModel.id == wishlist_id,  # type: ignore[arg-type]
                WishlistModel.status == WishlistStatus.ACTIVE,  # type: ignore[arg-type]
            )
            .values(**values)
        )
        if touched != 1:
            self.session.rollback()
            return False

        if items is not None:
            self.session.exec(  # type: ignore[call-overload]
                delete(WishlistItemModel)
                .where(
                    WishlistItemModel.wishlist_id == wishlist_id  # type: ignore[arg-type]
                )
                .execution_options(synchronize_session=False)
            )
            for item in items:
                self.session.add(WishlistItemModel.from_domain(item, wishlist_id))
        self.session.commit()
        return True

    def mark_redeemed(self, wishlist_id: str, now: datetime) -> bool:
        """Atomically claim the QR token: ACTIVE, unused, unexpired -> PROCESSING.

        Returns:
            True for exactly one caller per wishlist; False for everyone else
        """
        claimed = self._run_update(
            update(WishlistModel)
            .where(
                WishlistModel.id == wishlist_id,  # type: ignore[arg-type]
                WishlistModel.qr_token_used_at.is_(None),  # type: ignore[union-attr]
                WishlistModel.status == WishlistStatus.ACTIVE,  # type: ignore[arg-type]
                WishlistModel.expires_at >= now,  # type: ignore[arg-type]
            )
            .values(
                qr_token_used_at=now,
                status=WishlistStatus.PROCESSING,
                updated_at=now,
            )
        )
        self.session.commit()
        return claimed == 1

    def expire_if_active(self, wishlist_id: str, now: datetime) -> bool:
        """Materialize lazy expiration. Idempotent; never touches non-ACTIVE rows."""
        expired = self._run_update(
            update(WishlistModel)
            .where(
                WishlistModel.id == wishlist_id,  # type: ignore[arg-type]
                WishlistModel.status == WishlistStatus.ACTIVE,  # type: ignore[arg-type]
            )
            .values(status=WishlistStatus.EXPIRED, updated_at=now)
        )
        self.session.commit()
        return expired == 1

    def expire_overdue(
        self,
        now: datetime,
        owner_id: str | None = None,
        source: WishlistSource | None = None,
    ) -> int:
        """Materialize expiration for every overdue ACTIVE wishlist in the filter."""
        statement = update(WishlistModel).where(
            WishlistModel.status == WishlistStatus.ACTIVE,  # type: ignore[arg-type]
            WishlistModel.expires_at < now,  # type: ignore[arg-type]
        )
        if owner_id is not None:
            statement = statement.where(WishlistModel.owner_id == owner_id)  # type: ignore[arg-type]
        if source is not None:
            statement = statement.where(WishlistModel.source == source)  # type: ignore[arg-type]

        expired = self._run_update(
            statement.values(status=WishlistStatus.EXPIRED, updated_at=now)
        )
        self.session.commit()
        return expired

    def complete(
        self,
        wishlist_id: str,
        now: datetime,
        processed_by: str,
        metadata: dict[str, Any],
    ) -> bool:
        """PROCESSING -> COMPLETED. Returns False if the wishlist was not PROCESSING."""
        completed = self._run_update(
            update(WishlistModel)
            .where(
                WishlistModel.id == wishlist_id,  # type: ignore[arg-type]
                WishlistModel.status == WishlistStatus.PROCESSING,  # type: ignore[arg-type]
            )
            .values(
                status=WishlistStatus.COMPLETED,
                processed_at=now,
                processed_by=processed_by,
                wishlist_metadata=dict(metadata),
                updated_at=now,
            )
        )
        self.session.commit()
        return completed == 1

    def set_status(
        self,
        wishlist_id: str,
        status: WishlistStatus,
        now: datetime,
        metadata: dict[str, Any] | None = None,
        expected: DomainWishlist | None = None,
    ) -> bool:
        """Force a status (administrative cancel/expire).

        With ``expected``, the write only applies while the row still has the
        status and ``updated_at`` that snapshot was read with, so metadata
        merged from it cannot overwrite a concurrent change.
        """
        values: dict[str, Any] = {"status": status, "updated_at": now}
        if metadata is not None:
            values["wishlist_metadata"] = dict(metadata)

        statement = update(WishlistModel).where(
            WishlistModel.id == wishlist_id  # type: ignore[arg-type]
        )
        if expected is not None:
            statement = statement.where(
                WishlistModel.status == expected.status,  # type: ignore[arg-type]
                (
                    WishlistModel.updated_at.is_(None)  # type: ignore[union-attr]
                    if expected.updated_at is None
                    else WishlistModel.updated_at == expected.updated_at  # type: ignore[arg-type]
                ),
            )

        changed = self._run_update(statement.values(**values))
        self.session.commit()
        return changed == 1


class IdempotencyRepository:
    """Repository for idempotency ledger rows."""

    def __init__(self, session: Session):
        self.session = session

    def _run_update(self, statement) -> int:
        result = self.session.exec(  # type: ignore[call-overload]
            statement.execution_options(synchronize_session=False)
        )
        return int(result.rowcount)

    def find(self, key: str) -> DomainIdempotencyRecord | None:
        """Find ledger entry by key."""
        record = self.session.exec(
            select(IdempotencyModel)
            .where(IdempotencyModel.key == key)
            .execution_options(populate_existing=True)
        ).first()
        return record.to_domain() if record else None

    def insert(
        self, key: str, operation_type: OperationType, fingerprint: str
    ) -> DomainIdempotencyRecord:
        """Insert a PROCESSING entry.

        Raises:
            ConflictError: If another request inserted the same key first
        """
        record = IdempotencyModel(
            key=key,
            operation_type=operation_type,
            request_fingerprint=fingerprint,
            status=IdempotencyStatus.PROCESSING,
        )
        self.session.add(record)
        try:
            self.session.commit()
        except IntegrityError as e:
            self.session.rollback()
            raise ConflictError("Request is already being processed") from e
        self.session.refresh(record)
        return record.to_domain()

    def complete(
        self,
        key: str,
        response: dict[str, Any],
        wishlist_id: str | None,
        now: datetime,
    ) -> bool:
        """PROCESSING -> COMPLETED with the response to replay."""
        completed = self._run_update(
            update(IdempotencyModel)
            .where(
                IdempotencyModel.key == key,  # type: ignore[arg-type]
                IdempotencyModel.status == IdempotencyStatus.PROCESSING,  # type: ignore[arg-type]
            )
            .values(
                status=IdempotencyStatus.COMPLETED,
                cached_response=response,
                wishlist_id=wishlist_id,
                updated_at=now,
            )
        )
        self.session.commit()
        return completed == 1

    def fail(self, key: str, now: datetime) -> bool:
        """PROCESSING -> FAILED so the caller may retry with the same key."""
        failed = self._run_update(
            update(IdempotencyModel)
            .where(
                IdempotencyModel.key == key,  # type: ignore[arg-type]
                IdempotencyModel.status == IdempotencyStatus.PROCESSING,  # type: ignore[arg-type]
            )
            .values(status=IdempotencyStatus.FAILED, updated_at=now)
        )
        self.session.commit()
        return failed == 1

    def reopen(self, key: str, fingerprint: str, now: datetime) -> bool:
        """FAILED -> PROCESSING. Only one retrying request wins."""
        reopened = self._run_update(
            update(IdempotencyModel)
            .where(
                IdempotencyModel.key == key,  # type: ignore[arg-type]
                IdempotencyModel.status == IdempotencyStatus.FAILED,  # type: ignore[arg-type]
            )
            .values(
                status=IdempotencyStatus.PROCESSING,
                request_fingerprint=fingerprint,
                updated_at=now,
            )
        )
        self.session.commit()
        return reopened == 1
