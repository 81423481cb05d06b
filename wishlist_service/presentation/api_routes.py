from typing import Annotated, Any, Final

from fastapi import APIRouter, Depends, Header, Path, Query, Request, status
from fastapi.responses import JSONResponse
from pydantic import AliasChoices, BaseModel, ConfigDict, Field
from sqlmodel import Session

from ..application.catalog import ProductCatalog, list_catalog_products
from ..application.redemption_service import RedemptionService
from ..application.serializers import serialize_qr, serialize_wishlist
from ..application.wishlist_service import WishlistService
from ..config import settings
from ..constants import (
    DEFAULT_PRODUCT_LIMIT,
    DEFAULT_SEARCH_LIMIT,
    MAX_PRODUCT_LIMIT,
    MAX_SEARCH_LIMIT,
)
from ..domain.constants import WishlistSource, WishlistStatus
from ..domain.entities import Wishlist, validate_owner_id
from ..infrastructure.database.database import get_session

_ERROR_RESPONSES: Final[dict[int | str, dict[str, Any]]] = {
    400: {"description": "Bad Request - Invalid input or wrong lifecycle state"},
    404: {"description": "Not Found - Wishlist or QR token does not exist"},
}

api_router: Final = APIRouter(
    prefix="/api/wishlists", tags=["wishlists"], responses=_ERROR_RESPONSES
)
mobile_router: Final = APIRouter(
    prefix="/api/mobile/wishlists", tags=["mobile"], responses=_ERROR_RESPONSES
)
pos_router: Final = APIRouter(
    prefix="/api/pos/wishlists", tags=["pos"], responses=_ERROR_RESPONSES
)
products_router: Final = APIRouter(
    prefix="/api/products",
    tags=["products"],
    responses={
        403: {"description": "Forbidden - Collection is not allowed"},
        503: {"description": "Service Unavailable - Catalog not configured or down"},
    },
)

WishlistId = Annotated[str, Path(description="Wishlist identifier")]
OwnerQuery = Annotated[
    str | None, Query(description="Owner identifier (alias of user_id)")
]
UserQuery = Annotated[str | None, Query(description="Owner identifier")]


# Dependencies


def get_catalog(request: Request) -> ProductCatalog | None:
    """Catalog used to fill missing item data; None when not configured."""
    return getattr(request.app.state, "catalog", None)


def get_wishlist_service(
    session: Session = Depends(get_session),
    catalog: ProductCatalog | None = Depends(get_catalog),
) -> WishlistService:
    return WishlistService.from_settings(session, catalog=catalog)


def get_redemption_service(
    session: Session = Depends(get_session),
) -> RedemptionService:
    return RedemptionService(session)


WishlistServiceDep = Annotated[WishlistService, Depends(get_wishlist_service)]
RedemptionServiceDep = Annotated[RedemptionService, Depends(get_redemption_service)]


# Request Models


class WishlistCreate(BaseModel):
    """Request model for creating a wishlist."""

    owner_id: str | None = Field(
        None,
        validation_alias=AliasChoices("owner_id", "user_id"),
        description="Opaque owner identifier, trusted from the gateway",
        examples=["u1"],
    )
    items: list[dict[str, Any]] | None = Field(
        None,
        description="Line items; each needs a variant reference",
        examples=[
            [{"variant_id": "v1", "quantity": 2, "price": "15.99", "currency": "HKD"}]
        ],
    )
    source: WishlistSource = Field(
        WishlistSource.KIOSK, description="Where the wishlist was composed"
    )
    metadata: dict[str, Any] | None = Field(None, description="Free-form data")
    collection_id: str | None = Field(None, description="Catalog collection")


class ItemsUpdate(BaseModel):
    """Request model for replacing the item set."""

    items: list[dict[str, Any]] | None = Field(None, description="New item set")
    metadata: dict[str, Any] | None = Field(
        None, description="Replaces the wishlist metadata when given"
    )


class MobileWishlistCreate(BaseModel):
    owner_id: str | None = Field(
        None, validation_alias=AliasChoices("owner_id", "user_id")
    )
    items: list[dict[str, Any]] | None = None
    metadata: dict[str, Any] | None = None
    collection_id: str | None = None


class MobileWishlistUpdate(BaseModel):
    owner_id: str | None = Field(
        None, validation_alias=AliasChoices("owner_id", "user_id")
    )
    items: list[dict[str, Any]] | None = None
    metadata: dict[str, Any] | None = None


class OwnerBody(BaseModel):
    owner_id: str | None = Field(
        None, validation_alias=AliasChoices("owner_id", "user_id")
    )


class QRFetch(BaseModel):
    """Request model for redeeming a QR token at a POS terminal."""

    qr_token: str | None = Field(None, description="Token scanned from the QR code")


class WishlistComplete(BaseModel):
    processed_by: str | None = Field(None, description="POS terminal or staff tag")
    external_order_ref: str | None = Field(
        None,
        validation_alias=AliasChoices("external_order_ref", "shopify_order_id"),
        description="Order created by the POS for this wishlist",
    )


class WishlistCancel(BaseModel):
    reason: str | None = Field(None, description="Stored in metadata")


# Response Models


class WishlistItemResponse(BaseModel):
    id: str | None = Field(description="Item identifier")
    position: int = Field(description="Position in the wishlist")
    variant_ref: str = Field(description="Catalog variant reference")
    product_ref: str | None = None
    quantity: int = Field(description="Quantity, at least 1")
    title: str
    variant_title: str | None = None
    unit_price: str | None = Field(None, description="Decimal price snapshot")
    currency: str | None = None
    barcode: str | None = None
    image_url: str | None = None
    product_data: dict[str, Any] = Field(description="Caller's raw snapshot")


class WishlistResponse(BaseModel):
    id: str
    owner_id: str
    status: WishlistStatus
    source: WishlistSource
    collection_id: str | None = None
    qr_token: str
    qr_token_used_at: str | None = None
    processed_at: str | None = None
    processed_by: str | None = None
    expires_at: str
    metadata: dict[str, Any]
    created_at: str | None = None
    updated_at: str | None = None
    items: list[WishlistItemResponse]


class WishlistEnvelope(BaseModel):
    wishlist: WishlistResponse


class WishlistPage(BaseModel):
    wishlists: list[WishlistResponse]
    total: int = Field(description="Matches before pagination")
    limit: int
    offset: int


class QRItemSummary(BaseModel):
    variant_ref: str
    quantity: int


class QRCodeResponse(BaseModel):
    wishlist_id: str
    qr_token: str = Field(description="Render this string as the QR code")
    expires_at: str
    items: list[QRItemSummary]


class WishlistStatusResponse(BaseModel):
    wishlist_id: str
    status: WishlistStatus
    qr_used: bool
    expired: bool
    processed: bool
    expires_at: str


class ProductPage(BaseModel):
    """A page of catalog products; provider paging fields pass through."""

    model_config = ConfigDict(extra="allow")

    products: list[dict[str, Any]] = Field(description="Catalog products")


def _owner(owner_id: str | None) -> str:
    """Mobile calls must name the owner; the gateway supplies it."""
    return validate_owner_id(owner_id)


def _envelope(wishlist: Wishlist) -> dict[str, Any]:
    return {"wishlist": serialize_wishlist(wishlist)}


def _page(
    result: tuple[list[Wishlist], int], limit: int, offset: int
) -> dict[str, Any]:
    wishlists, total = result
    return {
        "wishlists": [serialize_wishlist(wishlist) for wishlist in wishlists],
        "total": total,
        "limit": limit,
        "offset": offset,
    }


def _created_response(service: WishlistService, key: str | None, **kwargs):
    result = service.create(idempotency_key=key, **kwargs)
    if result.replayed:
        return JSONResponse(
            status_code=status.HTTP_200_OK,
            content=result.body,
            headers={"Idempotent-Replayed": "true"},
        )
    return JSONResponse(status_code=status.HTTP_201_CREATED, content=result.body)


# General wishlist API


@api_router.post(
    "",
    response_model=WishlistEnvelope,
    status_code=status.HTTP_201_CREATED,
    summary="Create a wishlist",
    description="""
    Create an ACTIVE wishlist and issue its one-time QR token.

    **Idempotent** with an `Idempotency-Key` header: a retry of a completed
    request returns the original body with status 200; a retry while the
    first request is still running gets 409.
    """,
    responses={
        200: {"description": "Replayed response of an earlier request"},
        409: {"description": "Same idempotency key is still being processed"},
    },
)
def api_create_wishlist(
    *,
    service: WishlistServiceDep,
    payload: WishlistCreate,
    idempotency_key: Annotated[str | None, Header(alias="Idempotency-Key")] = None,
):
    """Create a wishlist, replaying the stored response for a known key."""
    return _created_response(
        service,
        idempotency_key,
        owner_id=payload.owner_id,
        items=payload.items,
        source=payload.source,
        metadata=payload.metadata,
        collection_id=payload.collection_id,
    )


@api_router.get(
    "",
    response_model=WishlistPage,
    summary="Search wishlists",
    description="Filter by owner, status and source; newest first.",
)
def api_search_wishlists(
    *,
    service: WishlistServiceDep,
    owner_id: OwnerQuery = None,
    user_id: UserQuery = None,
    status_filter: Annotated[WishlistStatus | None, Query(alias="status")] = None,
    source: WishlistSource | None = None,
    limit: Annotated[int, Query(ge=1, le=MAX_SEARCH_LIMIT)] = DEFAULT_SEARCH_LIMIT,
    offset: Annotated[int, Query(ge=0)] = 0,
) -> dict[str, Any]:
    result = service.search(
        owner_id=owner_id or user_id,
        status=status_filter,
        source=source,
        limit=limit,
        offset=offset,
    )
    return _page(result, limit, offset)


@api_router.get("/{wishlist_id}", response_model=WishlistEnvelope)
def api_get_wishlist(
    *, service: WishlistServiceDep, wishlist_id: WishlistId
) -> dict[str, Any]:
    """Fetch a wishlist; an overdue one is reported (and stored) as EXPIRED."""
    return _envelope(service.get(wishlist_id))


@api_router.put("/{wishlist_id}/items", response_model=WishlistEnvelope)
def api_update_items(
    *, service: WishlistServiceDep, wishlist_id: WishlistId, payload: ItemsUpdate
) -> dict[str, Any]:
    """Replace all items of an ACTIVE wishlist."""
    return _envelope(
        service.update_items(wishlist_id, payload.items, metadata=payload.metadata)
    )


@api_router.delete("/{wishlist_id}", response_model=WishlistEnvelope)
def api_cancel_wishlist(
    *,
    service: WishlistServiceDep,
    wishlist_id: WishlistId,
    reason: Annotated[str | None, Query(description="Cancellation reason")] = None,
) -> dict[str, Any]:
    """Cancel a wishlist from any state. Wishlists are never deleted."""
    return _envelope(service.cancel(wishlist_id, reason=reason))


@api_router.post("/{wishlist_id}/expire", response_model=WishlistEnvelope)
def api_expire_wishlist(
    *, service: WishlistServiceDep, wishlist_id: WishlistId
) -> dict[str, Any]:
    """Force a wishlist to EXPIRED regardless of its state."""
    return _envelope(service.expire(wishlist_id))


# Mobile API: every call is scoped to the owner


@mobile_router.post(
    "",
    response_model=WishlistEnvelope,
    status_code=status.HTTP_201_CREATED,
    responses={200: {"description": "Replayed response of an earlier request"}},
)
def mobile_create_wishlist(
    *,
    service: WishlistServiceDep,
    payload: MobileWishlistCreate,
    idempotency_key: Annotated[str | None, Header(alias="Idempotency-Key")] = None,
):
    return _created_response(
        service,
        idempotency_key,
        owner_id=payload.owner_id,
        items=payload.items,
        source=WishlistSource.MOBILE_APP,
        metadata=payload.metadata,
        collection_id=payload.collection_id,
    )


@mobile_router.get("", response_model=WishlistPage)
def mobile_list_wishlists(
    *,
    service: WishlistServiceDep,
    user_id: UserQuery = None,
    owner_id: OwnerQuery = None,
    status_filter: Annotated[WishlistStatus | None, Query(alias="status")] = None,
    limit: Annotated[int, Query(ge=1, le=MAX_SEARCH_LIMIT)] = DEFAULT_SEARCH_LIMIT,
    offset: Annotated[int, Query(ge=0)] = 0,
) -> dict[str, Any]:
    owner = _owner(user_id or owner_id)
    result = service.search(
        owner_id=owner, status=status_filter, limit=limit, offset=offset
    )
    return _page(result, limit, offset)


@mobile_router.get("/{wishlist_id}", response_model=WishlistEnvelope)
def mobile_get_wishlist(
    *,
    service: WishlistServiceDep,
    wishlist_id: WishlistId,
    user_id: UserQuery = None,
    owner_id: OwnerQuery = None,
) -> dict[str, Any]:
    return _envelope(service.get(wishlist_id, _owner(user_id or owner_id)))


@mobile_router.put("/{wishlist_id}", response_model=WishlistEnvelope)
def mobile_update_wishlist(
    *,
    service: WishlistServiceDep,
    wishlist_id: WishlistId,
    payload: MobileWishlistUpdate,
) -> dict[str, Any]:
    """Replace items and/or metadata; omitting items keeps the current ones."""
    return _envelope(
        service.update_items(
            wishlist_id,
            payload.items,
            _owner(payload.owner_id),
            metadata=payload.metadata,
        )
    )


@mobile_router.delete("/{wishlist_id}", response_model=WishlistEnvelope)
def mobile_cancel_wishlist(
    *,
    service: WishlistServiceDep,
    wishlist_id: WishlistId,
    user_id: UserQuery = None,
    owner_id: OwnerQuery = None,
    reason: Annotated[str | None, Query()] = None,
) -> dict[str, Any]:
    return _envelope(
        service.cancel(
            wishlist_id,
            reason=reason or "Cancelled by customer",
            owner_id=_owner(user_id or owner_id),
        )
    )


@mobile_router.post("/{wishlist_id}/qr", response_model=QRCodeResponse)
def mobile_generate_qr(
    *,
    service: WishlistServiceDep,
    wishlist_id: WishlistId,
    payload: OwnerBody | None = None,
    user_id: UserQuery = None,
) -> dict[str, Any]:
    """Return the wishlist's QR token; the same token on every call."""
    owner = _owner((payload.owner_id if payload else None) or user_id)
    return serialize_qr(service.generate_qr(wishlist_id, owner))


# POS API: redemption and completion


@pos_router.post(
    "/fetch-by-qr",
    response_model=WishlistEnvelope,
    responses={
        409: {"description": "QR code already used"},
        410: {"description": "Wishlist expired"},
    },
)
def pos_fetch_by_qr(
    *, service: RedemptionServiceDep, payload: QRFetch
) -> dict[str, Any]:
    """Redeem a scanned token; the wishlist moves to PROCESSING."""
    return _envelope(service.redeem(payload.qr_token))


@pos_router.post(
    "/{wishlist_id}/fetch",
    response_model=WishlistEnvelope,
    responses={
        403: {"description": "QR token belongs to a different wishlist"},
        409: {"description": "QR code already used"},
        410: {"description": "Wishlist expired"},
    },
)
def pos_fetch_wishlist(
    *, service: RedemptionServiceDep, wishlist_id: WishlistId, payload: QRFetch
) -> dict[str, Any]:
    """Redeem a token for a known wishlist id."""
    return _envelope(service.redeem(payload.qr_token, wishlist_id))


@pos_router.post("/{wishlist_id}/complete", response_model=WishlistEnvelope)
def pos_complete_wishlist(
    *,
    service: WishlistServiceDep,
    wishlist_id: WishlistId,
    payload: WishlistComplete | None = None,
) -> dict[str, Any]:
    payload = payload or WishlistComplete()
    return _envelope(
        service.complete(
            wishlist_id,
            processed_by=payload.processed_by,
            external_order_ref=payload.external_order_ref,
        )
    )


@pos_router.post("/{wishlist_id}/cancel", response_model=WishlistEnvelope)
def pos_cancel_wishlist(
    *,
    service: WishlistServiceDep,
    wishlist_id: WishlistId,
    payload: WishlistCancel | None = None,
) -> dict[str, Any]:
    reason = payload.reason if payload else None
    return _envelope(service.cancel(wishlist_id, reason=reason or "Cancelled at POS"))


@pos_router.get("/{wishlist_id}/status", response_model=WishlistStatusResponse)
def pos_wishlist_status(
    *, service: WishlistServiceDep, wishlist_id: WishlistId
) -> dict[str, Any]:
    return service.get_status(wishlist_id)


# Product catalog


@products_router.get(
    "",
    response_model=ProductPage,
    summary="List catalog products",
    description="""
    Page through the product catalog, optionally filtered by collection and
    stock locations. Pages are served from the catalog cache for a short
    time, so repeated kiosk requests do not reach the provider.
    """,
)
def list_products(
    *,
    catalog: Annotated[ProductCatalog | None, Depends(get_catalog)],
    collection: Annotated[
        str | None, Query(description="Collection handle to filter by")
    ] = None,
    limit: Annotated[int, Query(ge=1, le=MAX_PRODUCT_LIMIT)] = DEFAULT_PRODUCT_LIMIT,
    after: Annotated[
        str | None, Query(description="Cursor of the previous page")
    ] = None,
    locations: Annotated[
        list[str] | None, Query(description="Stock location identifiers")
    ] = None,
) -> dict[str, Any]:
    return list_catalog_products(
        catalog,
        collection,
        limit,
        after=after,
        locations=locations,
        allowed_collections=settings.catalog_collections,
    )
