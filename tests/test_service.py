from datetime import timedelta
from decimal import Decimal

import pytest
from sqlmodel import Session

from wishlist_service.application.redemption_service import RedemptionService
from wishlist_service.application.wishlist_service import WishlistService
from wishlist_service.domain.constants import (
    DEFAULT_ITEM_TITLE,
    WishlistSource,
    WishlistStatus,
)
from wishlist_service.domain.entities import Wishlist, WishlistItem
from wishlist_service.domain.exceptions import (
    ConflictError,
    ExpiredError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from wishlist_service.infrastructure.database.repositories import WishlistRepository


def _item(variant: str = "v1", **overrides) -> dict:
    payload = {
        "variant_id": variant,
        "quantity": 2,
        "price": "15.99",
        "currency": "HKD",
    }
    payload.update(overrides)
    return payload


def _create(service: WishlistService, owner_id: str = "u1", **kwargs):
    items = kwargs.pop("items", [_item()])
    result = service.create(owner_id, items, **kwargs)
    return service.get(result.body["wishlist"]["id"])


def _redeemed(service: WishlistService, redemption: RedemptionService):
    wishlist = _create(service)
    redemption.redeem(wishlist.qr_token)
    return service.get(wishlist.id)


def test_create_wishlist(service: WishlistService, clock):
    result = service.create("u1", [_item()])

    assert not result.replayed
    body = result.body["wishlist"]
    assert body["status"] == "ACTIVE"
    assert body["owner_id"] == "u1"
    assert body["source"] == "KIOSK"
    assert len(body["items"]) == 1
    assert body["items"][0]["quantity"] == 2
    assert body["items"][0]["unit_price"] == "15.99"
    assert body["items"][0]["currency"] == "HKD"
    assert body["qr_token"]
    assert body["expires_at"] == (clock.now + timedelta(hours=24)).isoformat()


def test_create_generates_long_unique_tokens(service: WishlistService):
    tokens = {_create(service).qr_token for _ in range(20)}

    assert len(tokens) == 20
    # 32 random bytes, hex encoded
    assert all(len(token) == 64 for token in tokens)


def test_create_validates_input(service: WishlistService):
    with pytest.raises(ValidationError):
        service.create("", [_item()])
    with pytest.raises(ValidationError):
        service.create("u1", [])
    with pytest.raises(ValidationError):
        service.create("u1", [_item(quantity=0)])
    with pytest.raises(ValidationError):
        service.create("u1", [_item()], source="WEB")


def test_create_respects_item_limit(session: Session, clock):
    service = WishlistService(session, max_items=2, clock=clock)

    with pytest.raises(ValidationError):
        service.create("u1", [_item("a"), _item("b"), _item("c")])


def test_create_with_configured_ttl_and_token_size(session: Session, clock):
    service = WishlistService(
        session, ttl=timedelta(hours=2), token_bytes=16, clock=clock
    )

    wishlist = _create(service)

    assert wishlist.expires_at == clock.now + timedelta(hours=2)
    assert len(wishlist.qr_token) == 32


def test_get_enforces_owner(service: WishlistService):
    wishlist = _create(service, owner_id="u1")

    assert service.get(wishlist.id, owner_id="u1").id == wishlist.id
    with pytest.raises(NotFoundError):
        service.get(wishlist.id, owner_id="u2")
    with pytest.raises(NotFoundError):
        service.get("missing")


def test_search_filters_and_orders_newest_first(service: WishlistService, clock):
    first = _create(service, owner_id="u1")
    clock.advance(minutes=1)
    second = _create(service, owner_id="u1", source=WishlistSource.MOBILE_APP)
    clock.advance(minutes=1)
    _create(service, owner_id="u2")

    wishlists, total = service.search(owner_id="u1")
    assert total == 2
    assert [w.id for w in wishlists] == [second.id, first.id]

    mobile, total = service.search(source=WishlistSource.MOBILE_APP)
    assert total == 1
    assert mobile[0].id == second.id

    page, total = service.search(limit=1, offset=1)
    assert total == 3
    assert len(page) == 1

    with pytest.raises(ValidationError):
        service.search(limit=0)


def test_update_items_replaces_everything(service: WishlistService):
    wishlist = _create(service, items=[_item("v1"), _item("v2")])

    updated = service.update_items(wishlist.id, [_item("v3", quantity=5)])

    assert [item.variant_ref for item in updated.items] == ["v3"]
    assert updated.items[0].quantity == 5
    assert service.get(wishlist.id).items[0].variant_ref == "v3"


def test_update_metadata_only_keeps_items(service: WishlistService):
    wishlist = _create(service, items=[_item("v1"), _item("v2")])

    updated = service.update_items(wishlist.id, None, metadata={"note": "gift"})

    assert updated.metadata == {"note": "gift"}
    assert [item.variant_ref for item in updated.items] == ["v1", "v2"]


def test_generate_qr_returns_same_token(service: WishlistService):
    wishlist = _create(service)

    first = service.generate_qr(wishlist.id)
    second = service.generate_qr(wishlist.id, owner_id="u1")

    assert first.qr_token == second.qr_token == wishlist.qr_token


def test_complete_sets_order_reference(
    service: WishlistService, redemption: RedemptionService, clock
):
    wishlist = _redeemed(service, redemption)

    completed = service.complete(
        wishlist.id, processed_by="POS1", external_order_ref="ORD-1"
    )

    assert completed.status == WishlistStatus.COMPLETED
    assert completed.processed_by == "POS1"
    assert completed.processed_at == clock.now
    assert completed.metadata["external_order_ref"] == "ORD-1"


def test_complete_defaults_processed_by(
    service: WishlistService, redemption: RedemptionService
):
    wishlist = _redeemed(service, redemption)

    assert service.complete(wishlist.id).processed_by == "POS"


def test_complete_requires_processing(service: WishlistService):
    wishlist = _create(service)

    with pytest.raises(InvalidStateError):
        service.complete(wishlist.id)


def test_cancel_is_allowed_from_any_state(
    service: WishlistService, redemption: RedemptionService
):
    wishlist = _redeemed(service, redemption)
    service.complete(wishlist.id)

    cancelled = service.cancel(wishlist.id, reason="customer changed mind")
    assert cancelled.status == WishlistStatus.CANCELLED
    assert cancelled.metadata["cancellation_reason"] == "customer changed mind"

    again = service.cancel(wishlist.id)
    assert again.status == WishlistStatus.CANCELLED
    assert again.metadata["cancellation_reason"] == "customer changed mind"


def test_expire_is_allowed_from_any_state(
    service: WishlistService, redemption: RedemptionService
):
    wishlist = _redeemed(service, redemption)

    assert service.expire(wishlist.id).status == WishlistStatus.EXPIRED
    assert service.expire(wishlist.id).status == WishlistStatus.EXPIRED


@pytest.mark.parametrize("terminal", ["cancel", "expire"])
def test_mutations_require_active(service: WishlistService, terminal: str):
    wishlist = _create(service)
    getattr(service, terminal)(wishlist.id)

    with pytest.raises(InvalidStateError):
        service.update_items(wishlist.id, [_item("v9")])
    with pytest.raises(InvalidStateError):
        service.generate_qr(wishlist.id)


def test_mutations_rejected_while_processing(
    service: WishlistService, redemption: RedemptionService
):
    wishlist = _redeemed(service, redemption)

    with pytest.raises(InvalidStateError):
        service.update_items(wishlist.id, [_item("v9")])
    with pytest.raises(InvalidStateError):
        service.generate_qr(wishlist.id)


def test_expired_wishlist_materializes_on_qr(service: WishlistService, clock):
    wishlist = _create(service)
    clock.advance(hours=24, seconds=1)

    with pytest.raises(ExpiredError) as exc_info:
        service.generate_qr(wishlist.id)

    assert exc_info.value.expired_at == wishlist.expires_at
    assert service.get(wishlist.id).status == WishlistStatus.EXPIRED


def test_zero_ttl_expires_on_next_access(session: Session, clock):
    service = WishlistService(session, ttl=timedelta(0), clock=clock)
    wishlist = _create(service)
    clock.advance(seconds=1)

    with pytest.raises(ExpiredError):
        service.update_items(wishlist.id, [_item("v2")])
    assert service.get(wishlist.id).status == WishlistStatus.EXPIRED


def test_get_materializes_expiry(service: WishlistService, clock):
    wishlist = _create(service)
    clock.advance(days=2)

    assert service.get(wishlist.id).status == WishlistStatus.EXPIRED


def test_search_materializes_expiry(service: WishlistService, clock):
    wishlist = _create(service)
    clock.advance(days=2)

    active, total = service.search(status=WishlistStatus.ACTIVE)
    assert total == 0
    assert active == []

    expired, _ = service.search(status=WishlistStatus.EXPIRED)
    assert [w.id for w in expired] == [wishlist.id]


def test_expiry_never_overrides_processing(
    service: WishlistService, redemption: RedemptionService, clock
):
    wishlist = _redeemed(service, redemption)
    clock.advance(days=2)

    assert service.get(wishlist.id).status == WishlistStatus.PROCESSING
    assert service.complete(wishlist.id).status == WishlistStatus.COMPLETED


def test_get_status(service: WishlistService, redemption: RedemptionService):
    wishlist = _create(service)
    status = service.get_status(wishlist.id)

    assert status == {
        "wishlist_id": wishlist.id,
        "status": "ACTIVE",
        "qr_used": False,
        "expired": False,
        "processed": False,
        "expires_at": wishlist.expires_at.isoformat(),
    }

    redemption.redeem(wishlist.qr_token)
    service.complete(wishlist.id)
    status = service.get_status(wishlist.id)
    assert status["status"] == "COMPLETED"
    assert status["qr_used"] is True
    assert status["processed"] is True


class _Catalog:
    def __init__(self, variants: dict):
        self.variants = variants
        self.calls: list[str] = []

    def get_variant(self, variant_ref: str):
        self.calls.append(variant_ref)
        return self.variants.get(variant_ref)

    def list_products(self, collection, limit, after=None, locations=None):
        return {"products": []}


def test_create_fills_missing_fields_from_catalog(session: Session, clock):
    catalog = _Catalog(
        {
            "v1": {"title": "Oolong", "price": "42.00", "currency": "HKD"},
            "v2": {"title": "Catalog title", "price": "1.00", "barcode": "4890"},
            "v3": {"title": "Unused", "price": "0.10"},
        }
    )
    service = WishlistService(session, catalog=catalog, clock=clock)

    wishlist = _create(
        service,
        items=[
            {"variant_id": "v1"},
            {"variant_id": "v2", "title": "Own title"},
            {"variant_id": "v3", "title": "Complete", "price": "9.50"},
        ],
    )

    oolong, own, complete = wishlist.items
    assert oolong.title == "Oolong"
    assert oolong.unit_price == Decimal("42.00")
    # caller-supplied values win; catalog only fills blanks
    assert own.title == "Own title"
    assert own.unit_price == Decimal("1.00")
    assert own.barcode == "4890"
    assert complete.unit_price == Decimal("9.50")
    assert catalog.calls == ["v1", "v2"]


def test_cancel_keeps_metadata_written_concurrently(
    service: WishlistService,
    redemption: RedemptionService,
    session: Session,
    clock,
    monkeypatch,
):
    wishlist = _redeemed(service, redemption)
    load = service._load
    completed_by_pos: list[str] = []

    def load_then_complete_elsewhere(wishlist_id, owner_id=None):
        snapshot = load(wishlist_id, owner_id)
        if not completed_by_pos:
            completed_by_pos.append(wishlist_id)
            clock.advance(seconds=1)
            WishlistService(session, clock=clock).complete(
                wishlist_id, external_order_ref="ORD-1"
            )
        return snapshot

    monkeypatch.setattr(service, "_load", load_then_complete_elsewhere)

    cancelled = service.cancel(wishlist.id, reason="refund requested")

    assert cancelled.status == WishlistStatus.CANCELLED
    assert cancelled.metadata["external_order_ref"] == "ORD-1"
    assert cancelled.metadata["cancellation_reason"] == "refund requested"


def test_cancel_gives_up_when_wishlist_keeps_changing(
    service: WishlistService, monkeypatch
):
    wishlist = _create(service)
    monkeypatch.setattr(service.repo, "set_status", lambda *args, **kwargs: False)

    with pytest.raises(ConflictError):
        service.cancel(wishlist.id, reason="refund requested")

    monkeypatch.undo()
    assert service.get(wishlist.id).status == WishlistStatus.ACTIVE


def test_repository_add_returns_stored_items_in_order(session: Session, clock):
    repo = WishlistRepository(session)
    stored = repo.add(
        Wishlist(
            id="w-direct",
            owner_id="u1",
            source=WishlistSource.MOBILE_APP,
            qr_token="f" * 64,
            expires_at=clock.now + timedelta(hours=1),
            items=[
                WishlistItem(variant_ref="v2", position=1),
                WishlistItem(variant_ref="v1", position=0),
            ],
        )
    )

    assert stored.id == "w-direct"
    assert [item.variant_ref for item in stored.items] == ["v1", "v2"]
    assert all(item.wishlist_id == "w-direct" for item in stored.items)
    assert all(item.id for item in stored.items)


class _FlakyCatalog:
    def get_variant(self, variant_ref: str):
        if variant_ref == "down":
            raise ConnectionError("catalog timed out")
        if variant_ref == "odd":
            return {"title": "Odd", "price": "3.00", "currency": "dollars"}
        return {"title": "Oolong", "price": "42.00"}

    def list_products(self, collection, limit, after=None, locations=None):
        return {"products": []}


def test_create_survives_catalog_errors(session: Session, clock):
    service = WishlistService(session, catalog=_FlakyCatalog(), clock=clock)

    wishlist = _create(
        service,
        items=[{"variant_id": "down"}, {"variant_id": "odd"}, {"variant_id": "v1"}],
    )

    down, odd, oolong = wishlist.items
    assert down.title == DEFAULT_ITEM_TITLE
    assert down.unit_price is None
    # unusable catalog data leaves the caller's item untouched
    assert odd.title == DEFAULT_ITEM_TITLE
    assert odd.currency == "HKD"
    assert oolong.title == "Oolong"
    assert oolong.unit_price == Decimal("42.00")
