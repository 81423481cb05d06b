"""Pure domain entities without infrastructure dependencies."""

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any

from .constants import (
    CURRENCY_CODE_LENGTH,
    DEFAULT_ITEM_TITLE,
    DEFAULT_QUANTITY,
    MAX_OWNER_ID_LENGTH,
    MAX_PRICE_LENGTH,
    MAX_QUANTITY,
    MAX_REF_LENGTH,
    MAX_TITLE_LENGTH,
    TERMINAL_STATUSES,
    IdempotencyStatus,
    OperationType,
    WishlistSource,
    WishlistStatus,
)
from .exceptions import ValidationError

# Payload aliases sent by the kiosk and mobile clients, first match wins
_ITEM_ALIASES: dict[str, tuple[str, ...]] = {
    "variant_ref": ("variant_ref", "variant_id", "variantId"),
    "product_ref": ("product_ref", "product_id", "productId"),
    "title": ("title", "product_title"),
    "variant_title": ("variant_title", "variantTitle"),
    "unit_price": ("unit_price", "price"),
    "currency": ("currency",),
    "barcode": ("barcode",),
    "image_url": ("image_url", "imageUrl"),
}


def _pick(payload: Mapping[str, Any], name: str) -> Any:
    for alias in _ITEM_ALIASES[name]:
        value = payload.get(alias)
        if value is not None and value != "":
            return value
    return None


def _optional_str(value: Any) -> str | None:
    return None if value is None else str(value)


def parse_price(value: Any) -> Decimal | None:
    """Parse a caller-supplied price into a Decimal.

    Raises:
        ValidationError: If the value is not a non-negative decimal number
    """
    if value is None:
        return None
    if isinstance(value, bool):
        raise ValidationError(f"Invalid price: {value!r}")
    try:
        price = Decimal(str(value).strip())
    except InvalidOperation as e:
        raise ValidationError(f"Invalid price: {value!r}") from e
    if not price.is_finite() or price < 0:
        raise ValidationError(f"Invalid price: {value!r}")
    return price


def parse_quantity(value: Any) -> int:
    """Parse a quantity, defaulting to 1 when omitted.

    Raises:
        ValidationError: If the value is not an integer >= 1
    """
    if value is None:
        return DEFAULT_QUANTITY
    if isinstance(value, bool):
        raise ValidationError("Item quantity must be a positive integer")
    if isinstance(value, str) and value.strip().isdigit():
        value = int(value.strip())
    if not isinstance(value, int) or value < 1:
        raise ValidationError("Item quantity must be a positive integer")
    if value > MAX_QUANTITY:
        raise ValidationError(f"Item quantity cannot exceed {MAX_QUANTITY}")
    return value


def validate_owner_id(owner_id: Any) -> str:
    """Validate the opaque owner identifier passed by the gateway.

    Raises:
        ValidationError: If owner_id is missing, blank or too long
    """
    if not isinstance(owner_id, str) or not owner_id.strip():
        raise ValidationError("owner_id is required")
    if len(owner_id) > MAX_OWNER_ID_LENGTH:
        raise ValidationError(
            f"owner_id cannot be longer than {MAX_OWNER_ID_LENGTH} characters"
        )
    return owner_id.strip()


@dataclass
class WishlistItem:
    """A line item: an immutable snapshot of product data at add-time."""

    variant_ref: str
    quantity: int = DEFAULT_QUANTITY
    product_ref: str | None = None
    title: str = DEFAULT_ITEM_TITLE
    variant_title: str | None = None
    unit_price: Decimal | None = None
    currency: str | None = None
    barcode: str | None = None
    image_url: str | None = None
    raw_snapshot: dict[str, Any] = field(default_factory=dict)
    id: str | None = None
    wishlist_id: str | None = None
    position: int = 0

    def __post_init__(self):
        self.validate()

    def validate(self) -> None:
        """Validate item business rules."""
        if not self.variant_ref or not str(self.variant_ref).strip():
            raise ValidationError("Each item requires a variant reference")
        if len(self.variant_ref) > MAX_REF_LENGTH:
            raise ValidationError(
                f"Variant reference cannot be longer than {MAX_REF_LENGTH} characters"
            )
        if not 1 <= self.quantity <= MAX_QUANTITY:
            raise ValidationError(
                f"Item quantity must be an integer between 1 and {MAX_QUANTITY}"
            )
        for name, value, limit in (
            ("Product reference", self.product_ref, MAX_REF_LENGTH),
            ("Barcode", self.barcode, MAX_REF_LENGTH),
            ("Item title", self.title, MAX_TITLE_LENGTH),
            ("Variant title", self.variant_title, MAX_TITLE_LENGTH),
        ):
            if value is not None and len(value) > limit:
                raise ValidationError(
                    f"{name} cannot be longer than {limit} characters"
                )
        if self.unit_price is not None and len(str(self.unit_price)) > MAX_PRICE_LENGTH:
            raise ValidationError(f"Invalid price: {self.unit_price}")
        if self.currency is not None and (
            len(self.currency) != CURRENCY_CODE_LENGTH or not self.currency.isalpha()
        ):
            raise ValidationError(
                f"Currency must be a 3-letter ISO code, got {self.currency!r}"
            )

    @classmethod
    def from_payload(
        cls, payload: Any, default_currency: str, position: int = 0
    ) -> "WishlistItem":
        """Build an item from a caller payload.

        Known fields (and their client aliases) are lifted into typed
        attributes; ``product_data`` or, failing that, the whole payload is
        kept verbatim as ``raw_snapshot``.
        """
        if not isinstance(payload, Mapping):
            raise ValidationError("Each item must be an object")

        variant_ref = _pick(payload, "variant_ref")
        if variant_ref is None:
            raise ValidationError("Each item requires a variant reference")

        product_data = payload.get("product_data")
        raw_snapshot = (
            dict(product_data) if isinstance(product_data, Mapping) else dict(payload)
        )
        currency = _pick(payload, "currency")

        return cls(
            variant_ref=str(variant_ref),
            quantity=parse_quantity(payload.get("quantity")),
            product_ref=_optional_str(_pick(payload, "product_ref")),
            title=str(_pick(payload, "title") or DEFAULT_ITEM_TITLE),
            variant_title=_optional_str(_pick(payload, "variant_title")),
            unit_price=parse_price(_pick(payload, "unit_price")),
            currency=str(currency).upper() if currency else default_currency,
            barcode=_optional_str(_pick(payload, "barcode")),
            image_url=_optional_str(_pick(payload, "image_url")),
            raw_snapshot=raw_snapshot,
            position=position,
        )

    def needs_catalog_data(self) -> bool:
        """Whether the caller left display or price fields for the catalog to fill."""
        return self.title == DEFAULT_ITEM_TITLE or self.unit_price is None


def parse_items(
    payloads: Any, default_currency: str, max_items: int
) -> list[WishlistItem]:
    """Parse a non-empty list of item payloads.

    Raises:
        ValidationError: If the list is missing, empty, too long or has a bad item
    """
    if not isinstance(payloads, list) or not payloads:
        raise ValidationError("items array is required and must not be empty")
    if len(payloads) > max_items:
        raise ValidationError(f"A wishlist cannot contain more than {max_items} items")
    return [
        WishlistItem.from_payload(payload, default_currency, position=index)
        for index, payload in enumerate(payloads)
    ]


@dataclass
class Wishlist:
    """Core business entity: a customer's staged list bound to one QR token."""

    id: str
    owner_id: str
    source: WishlistSource
    qr_token: str
    expires_at: datetime
    status: WishlistStatus = WishlistStatus.ACTIVE
    collection_id: str | None = None
    qr_token_used_at: datetime | None = None
    processed_at: datetime | None = None
    processed_by: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: datetime | None = None
    updated_at: datetime | None = None
    items: list[WishlistItem] = field(default_factory=list)

    def __post_init__(self):
        self.validate()

    def validate(self) -> None:
        """Validate wishlist business rules."""
        validate_owner_id(self.owner_id)
        if self.qr_token_used_at is not None and self.status == WishlistStatus.ACTIVE:
            raise ValidationError("A redeemed wishlist cannot be ACTIVE")

    def is_expired(self, now: datetime) -> bool:
        """Check whether ``now`` is past the expiry time."""
        return now > self.expires_at

    def is_overdue(self, now: datetime) -> bool:
        """ACTIVE but past expiry: the next access must materialize EXPIRED."""
        return self.status == WishlistStatus.ACTIVE and self.is_expired(now)

    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def is_qr_used(self) -> bool:
        return self.qr_token_used_at is not None

    def is_processed(self) -> bool:
        return self.processed_at is not None


@dataclass
class IdempotencyRecord:
    """Ledger entry guarding one retried operation."""

    key: str
    operation_type: OperationType
    request_fingerprint: str
    status: IdempotencyStatus = IdempotencyStatus.PROCESSING
    wishlist_id: str | None = None
    cached_response: dict[str, Any] | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    def is_completed(self) -> bool:
        return self.status == IdempotencyStatus.COMPLETED

    def is_in_flight(self) -> bool:
        return self.status == IdempotencyStatus.PROCESSING
