"""JSON bodies for wishlists.

Create responses are cached verbatim in the idempotency ledger, so these
must produce plain JSON types only.
"""

from datetime import datetime
from typing import Any

from ..domain.entities import Wishlist, WishlistItem


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def serialize_item(item: WishlistItem) -> dict[str, Any]:
    return {
        "id": item.id,
        "position": item.position,
        "variant_ref": item.variant_ref,
        "product_ref": item.product_ref,
        "quantity": item.quantity,
        "title": item.title,
        "variant_title": item.variant_title,
        # decimal as string so no precision is lost in transit
        "unit_price": str(item.unit_price) if item.unit_price is not None else None,
        "currency": item.currency,
        "barcode": item.barcode,
        "image_url": item.image_url,
        "product_data": item.raw_snapshot,
    }


def serialize_wishlist(wishlist: Wishlist) -> dict[str, Any]:
    return {
        "id": wishlist.id,
        "owner_id": wishlist.owner_id,
        "status": str(wishlist.status),
        "source": str(wishlist.source),
        "collection_id": wishlist.collection_id,
        "qr_token": wishlist.qr_token,
        "qr_token_used_at": _iso(wishlist.qr_token_used_at),
        "processed_at": _iso(wishlist.processed_at),
        "processed_by": wishlist.processed_by,
        "expires_at": _iso(wishlist.expires_at),
        "metadata": wishlist.metadata,
        "created_at": _iso(wishlist.created_at),
        "updated_at": _iso(wishlist.updated_at),
        "items": [serialize_item(item) for item in wishlist.items],
    }


def serialize_qr(wishlist: Wishlist) -> dict[str, Any]:
    """Token plus the minimal item summary a QR renderer needs."""
    return {
        "wishlist_id": wishlist.id,
        "qr_token": wishlist.qr_token,
        "expires_at": _iso(wishlist.expires_at),
        "items": [
            {"variant_ref": item.variant_ref, "quantity": item.quantity}
            for item in wishlist.items
        ],
    }


def serialize_status(wishlist: Wishlist, now: datetime) -> dict[str, Any]:
    return {
        "wishlist_id": wishlist.id,
        "status": str(wishlist.status),
        "qr_used": wishlist.is_qr_used(),
        "expired": wishlist.is_expired(now),
        "processed": wishlist.is_processed(),
        "expires_at": _iso(wishlist.expires_at),
    }
