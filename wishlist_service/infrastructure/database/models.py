import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any

from sqlmodel import JSON, Column, Field, Relationship, SQLModel

from ...domain.clock import utc_now
from ...domain.constants import (
    CURRENCY_CODE_LENGTH,
    MAX_OWNER_ID_LENGTH,
    MAX_PRICE_LENGTH,
    MAX_REF_LENGTH,
    MAX_TITLE_LENGTH,
    IdempotencyStatus,
    OperationType,
    WishlistSource,
    WishlistStatus,
)
from ...domain.entities import IdempotencyRecord as DomainIdempotencyRecord
from ...domain.entities import Wishlist as DomainWishlist
from ...domain.entities import WishlistItem as DomainWishlistItem


def _new_id() -> str:
    return str(uuid.uuid4())


class Wishlist(SQLModel, table=True):  # type: ignore[call-arg]
    """A customer's staged list of variants with its one-time QR token."""

    __tablename__ = "wishlists"

    id: str = Field(default_factory=_new_id, primary_key=True, max_length=36)
    owner_id: str = Field(index=True, max_length=MAX_OWNER_ID_LENGTH)
    status: WishlistStatus = Field(default=WishlistStatus.ACTIVE, index=True)
    source: WishlistSource = Field(default=WishlistSource.KIOSK)
    collection_id: str | None = Field(default=None, max_length=MAX_REF_LENGTH)

    # unique constraint: the store arbitrates token collisions
    qr_token: str = Field(unique=True, index=True, max_length=255)
    qr_token_used_at: datetime | None = None

    processed_at: datetime | None = None
    processed_by: str | None = Field(default=None, max_length=255)
    expires_at: datetime = Field(index=True)

    # "metadata" is reserved on declarative classes, so only the column uses it
    wishlist_metadata: dict[str, Any] = Field(
        default_factory=dict, sa_column=Column("metadata", JSON, nullable=False)
    )

    created_at: datetime = Field(default_factory=utc_now, index=True)
    updated_at: datetime = Field(default_factory=utc_now)

    items: list["WishlistItem"] = Relationship(
        back_populates="wishlist",
        sa_relationship_kwargs={
            "cascade": "all",
            "order_by": "WishlistItem.position",
        },
    )

    @classmethod
    def from_domain(cls, domain_wishlist: DomainWishlist) -> "Wishlist":
        """Convert domain entity to persistence model (items are handled separately)."""
        now = utc_now()
        return cls(
            id=domain_wishlist.id,
            owner_id=domain_wishlist.owner_id,
            status=domain_wishlist.status,
            source=domain_wishlist.source,
            collection_id=domain_wishlist.collection_id,
            qr_token=domain_wishlist.qr_token,
            qr_token_used_at=domain_wishlist.qr_token_used_at,
            processed_at=domain_wishlist.processed_at,
            processed_by=domain_wishlist.processed_by,
            expires_at=domain_wishlist.expires_at,
            wishlist_metadata=dict(domain_wishlist.metadata),
            created_at=domain_wishlist.created_at or now,
            updated_at=domain_wishlist.updated_at or now,
        )

    def to_domain(self, with_items: bool = True) -> DomainWishlist:
        """Convert persistence model to domain entity."""
        return DomainWishlist(
            id=self.id,
            owner_id=self.owner_id,
            source=WishlistSource(self.source),
            qr_token=self.qr_token,
            expires_at=self.expires_at,
            status=WishlistStatus(self.status),
            collection_id=self.collection_id,
            qr_token_used_at=self.qr_token_used_at,
            processed_at=self.processed_at,
            processed_by=self.processed_by,
            metadata=dict(self.wishlist_metadata or {}),
            created_at=self.created_at,
            updated_at=self.updated_at,
            items=[item.to_domain() for item in self.items] if with_items else [],
        )


class WishlistItem(SQLModel, table=True):  # type: ignore[call-arg]
    """A line item snapshot. Exclusively owned by one wishlist."""

    __tablename__ = "wishlist_items"

    id: str = Field(default_factory=_new_id, primary_key=True, max_length=36)
    wishlist_id: str = Field(foreign_key="wishlists.id", index=True, max_length=36)
    position: int = Field(default=0)

    variant_ref: str = Field(index=True, max_length=MAX_REF_LENGTH)
    product_ref: str | None = Field(default=None, max_length=MAX_REF_LENGTH)
    quantity: int = Field(default=1, ge=1)
    title: str = Field(max_length=MAX_TITLE_LENGTH)
    variant_title: str | None = Field(default=None, max_length=MAX_TITLE_LENGTH)

    # decimal kept as text so SQLite does not round it through float
    unit_price: str | None = Field(default=None, max_length=MAX_PRICE_LENGTH)
    currency: str | None = Field(default=None, max_length=CURRENCY_CODE_LENGTH)
    barcode: str | None = Field(default=None, max_length=MAX_REF_LENGTH)
    image_url: str | None = None

    raw_snapshot: dict[str, Any] = Field(
        default_factory=dict, sa_column=Column(JSON, nullable=False)
    )
    created_at: datetime = Field(default_factory=utc_now)

    wishlist: Wishlist | None = Relationship(back_populates="items")

    @classmethod
    def from_domain(
        cls, domain_item: DomainWishlistItem, wishlist_id: str
    ) -> "WishlistItem":
        """Convert domain entity to persistence model."""
        return cls(
            id=domain_item.id or _new_id(),
            wishlist_id=wishlist_id,
            position=domain_item.position,
            variant_ref=domain_item.variant_ref,
            product_ref=domain_item.product_ref,
            quantity=domain_item.quantity,
            title=domain_item.title,
            variant_title=domain_item.variant_title,
            unit_price=(
                str(domain_item.unit_price)
                if domain_item.unit_price is not None
                else None
            ),
            currency=domain_item.currency,
            barcode=domain_item.barcode,
            image_url=domain_item.image_url,
            raw_snapshot=dict(domain_item.raw_snapshot),
        )

    def to_domain(self) -> DomainWishlistItem:
        """Convert persistence model to domain entity."""
        return DomainWishlistItem(
            id=self.id,
            wishlist_id=self.wishlist_id,
            position=self.position,
            variant_ref=self.variant_ref,
            product_ref=self.product_ref,
            quantity=self.quantity,
            title=self.title,
            variant_title=self.variant_title,
            unit_price=(
                Decimal(self.unit_price) if self.unit_price is not None else None
            ),
            currency=self.currency,
            barcode=self.barcode,
            image_url=self.image_url,
            raw_snapshot=dict(self.raw_snapshot or {}),
        )


class IdempotencyRecord(SQLModel, table=True):  # type: ignore[call-arg]
    """Ledger row: one per caller-supplied idempotency key."""

    __tablename__ = "idempotency"

    id: str = Field(default_factory=_new_id, primary_key=True, max_length=36)
    key: str = Field(unique=True, index=True, max_length=255)
    operation_type: OperationType
    wishlist_id: str | None = Field(
        default=None, foreign_key="wishlists.id", index=True, max_length=36
    )
    request_fingerprint: str = Field(max_length=64)
    status: IdempotencyStatus = Field(default=IdempotencyStatus.PROCESSING)
    cached_response: dict[str, Any] | None = Field(
        default=None, sa_column=Column(JSON, nullable=True)
    )
    created_at: datetime = Field(default_factory=utc_now, index=True)
    updated_at: datetime = Field(default_factory=utc_now)

    def to_domain(self) -> DomainIdempotencyRecord:
        """Convert persistence model to domain entity."""
        return DomainIdempotencyRecord(
            key=self.key,
            operation_type=OperationType(self.operation_type),
            request_fingerprint=self.request_fingerprint,
            status=IdempotencyStatus(self.status),
            wishlist_id=self.wishlist_id,
            cached_response=self.cached_response,
            created_at=self.created_at,
            updated_at=self.updated_at,
        )
