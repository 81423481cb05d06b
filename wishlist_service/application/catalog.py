"""Product catalog boundary.

The catalog is an external collaborator: the service uses it to fill in
snapshot fields the caller left out when a wishlist is created, and passes
product listings through to kiosk and mobile clients. Its results go
through a short-lived cache keyed by query shape.
"""

from collections.abc import Sequence
from dataclasses import replace
from decimal import Decimal
from typing import Any, Protocol

from ..domain.constants import DEFAULT_ITEM_TITLE
from ..domain.entities import WishlistItem, parse_price
from ..domain.exceptions import (
    CatalogUnavailableError,
    ForbiddenError,
    ValidationError,
)
from ..infrastructure.cache import CacheBackend
from ..logging_config import get_logger

logger = get_logger(__name__)


class ProductCatalog(Protocol):
    """Read-only product/variant lookups.

    ``get_variant`` returns a mapping with any of ``title``, ``variant_title``,
    ``price``, ``currency``, ``barcode``, ``image_url`` and ``product_id``,
    or None when the variant is unknown. ``list_products`` returns a page
    shaped like ``{"products": [...], "page_info": {...}}``.
    """

    def get_variant(self, variant_ref: str) -> dict[str, Any] | None: ...

    def list_products(
        self,
        collection: str | None,
        limit: int,
        after: str | None = None,
        locations: Sequence[str] | None = None,
    ) -> dict[str, Any]: ...


def products_cache_key(
    collection: str | None,
    limit: int,
    after: str | None = None,
    locations: Sequence[str] | None = None,
) -> str:
    """Cache key for a product listing: collection filter, page cursor, locations."""
    parts = ["products", collection or "all", f"limit:{limit}"]
    if after:
        parts.append(f"after:{after}")
    if locations:
        parts.append(f"loc:{','.join(sorted(locations))}")
    return ":".join(parts)


def variant_cache_key(variant_ref: str) -> str:
    return f"variant:{variant_ref}"


class CachedProductCatalog:
    """Wraps a catalog provider with a time-boxed cache."""

    def __init__(self, provider: ProductCatalog, cache: CacheBackend, ttl_seconds: int):
        self.provider = provider
        self.cache = cache
        self.ttl_seconds = ttl_seconds

    def get_variant(self, variant_ref: str) -> dict[str, Any] | None:
        key = variant_cache_key(variant_ref)
        cached = self.cache.get(key)
        if cached is not None:
            return cached

        variant = self.provider.get_variant(variant_ref)
        if variant is not None:
            self.cache.set(key, variant, self.ttl_seconds)
        return variant

    def list_products(
        self,
        collection: str | None,
        limit: int,
        after: str | None = None,
        locations: Sequence[str] | None = None,
    ) -> dict[str, Any]:
        key = products_cache_key(collection, limit, after, locations)
        cached = self.cache.get(key)
        if cached is not None:
            return cached

        result = self.provider.list_products(collection, limit, after, locations)
        self.cache.set(key, result, self.ttl_seconds)
        return result


def list_catalog_products(
    catalog: ProductCatalog | None,
    collection: str | None,
    limit: int,
    after: str | None = None,
    locations: Sequence[str] | None = None,
    allowed_collections: Sequence[str] = (),
) -> dict[str, Any]:
    """Page through catalog products, optionally filtered by collection.

    ``allowed_collections`` restricts the collection filter when non-empty.

    Raises:
        ForbiddenError: If the collection is not in ``allowed_collections``
        CatalogUnavailableError: If no catalog is configured or the lookup fails
    """
    if collection and allowed_collections and collection not in allowed_collections:
        raise ForbiddenError(
            f"Collection not allowed, use one of: {', '.join(allowed_collections)}"
        )
    if catalog is None:
        raise CatalogUnavailableError("Product catalog is not configured")
    try:
        return catalog.list_products(collection, limit, after, locations)
    except Exception as e:
        logger.error("Catalog listing failed", collection=collection, error=str(e))
        raise CatalogUnavailableError("Product catalog is unavailable") from e


def _lookup_variant(catalog: ProductCatalog, variant_ref: str) -> dict[str, Any] | None:
    try:
        return catalog.get_variant(variant_ref)
    except Exception as e:
        logger.warning(
            "Catalog lookup failed, keeping caller data",
            variant_ref=variant_ref,
            error=str(e),
        )
        return None


def enrich_items(
    items: list[WishlistItem], catalog: ProductCatalog | None
) -> list[WishlistItem]:
    """Fill missing title/price fields from the catalog.

    Caller-supplied values always win; the result is still a point-in-time
    snapshot and is never refreshed afterwards. A catalog that errors or
    returns unusable data leaves the item as the caller sent it.
    """
    if catalog is None:
        return items

    enriched = []
    for item in items:
        if not item.needs_catalog_data():
            enriched.append(item)
            continue

        variant = _lookup_variant(catalog, item.variant_ref)
        if not variant:
            logger.info("Variant not found in catalog", variant_ref=item.variant_ref)
            enriched.append(item)
            continue

        try:
            catalog_price = parse_price(variant.get("price"))
        except ValidationError:
            logger.warning(
                "Ignoring unparseable catalog price",
                variant_ref=item.variant_ref,
                price=variant.get("price"),
            )
            catalog_price = None

        try:
            enriched.append(_merge_variant(item, variant, catalog_price))
        except ValidationError as e:
            logger.warning(
                "Ignoring invalid catalog data",
                variant_ref=item.variant_ref,
                error=e.message,
            )
            enriched.append(item)
    return enriched


def _merge_variant(
    item: WishlistItem, variant: dict[str, Any], catalog_price: Decimal | None
) -> WishlistItem:
    currency = variant.get("currency")
    return replace(
        item,
        title=(
            item.title
            if item.title != DEFAULT_ITEM_TITLE
            else str(variant.get("title") or item.title)
        ),
        variant_title=item.variant_title or _optional_str(variant.get("variant_title")),
        unit_price=item.unit_price if item.unit_price is not None else catalog_price,
        currency=(
            item.currency
            if item.unit_price is not None or not currency
            else str(currency).upper()
        ),
        product_ref=item.product_ref or _optional_str(variant.get("product_id")),
        barcode=item.barcode or _optional_str(variant.get("barcode")),
        image_url=item.image_url or _optional_str(variant.get("image_url")),
    )


def _optional_str(value: Any) -> str | None:
    return None if value is None else str(value)
