import threading
from datetime import datetime

import pytest
from sqlmodel import Session, SQLModel, create_engine

from wishlist_service.application.redemption_service import RedemptionService
from wishlist_service.application.wishlist_service import WishlistService
from wishlist_service.domain.constants import WishlistStatus
from wishlist_service.domain.exceptions import (
    ConflictError,
    ExpiredError,
    ForbiddenError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from wishlist_service.infrastructure.database.repositories import WishlistRepository

ITEMS = [{"variant_id": "v1", "quantity": 1, "price": "10.00"}]


def _create(service: WishlistService, owner_id: str = "u1"):
    result = service.create(owner_id, ITEMS)
    return service.get(result.body["wishlist"]["id"])


def test_redeem_moves_wishlist_to_processing(
    service: WishlistService, redemption: RedemptionService, clock
):
    wishlist = _create(service)

    redeemed = redemption.redeem(wishlist.qr_token)

    assert redeemed.id == wishlist.id
    assert redeemed.status == WishlistStatus.PROCESSING
    assert redeemed.qr_token_used_at == clock.now
    assert [item.variant_ref for item in redeemed.items] == ["v1"]


def test_redeem_with_matching_wishlist_id(
    service: WishlistService, redemption: RedemptionService
):
    wishlist = _create(service)

    assert redemption.redeem(wishlist.qr_token, wishlist.id).id == wishlist.id


@pytest.mark.parametrize("token", [None, "", "   "])
def test_redeem_requires_token(redemption: RedemptionService, token):
    with pytest.raises(ValidationError):
        redemption.redeem(token)


def test_redeem_unknown_token(redemption: RedemptionService):
    with pytest.raises(NotFoundError):
        redemption.redeem("f" * 64)


def test_redeem_token_of_another_wishlist(
    service: WishlistService, redemption: RedemptionService
):
    first = _create(service)
    second = _create(service)

    with pytest.raises(ForbiddenError):
        redemption.redeem(first.qr_token, second.id)

    # a refused attempt must not consume the token
    assert service.get(first.id).status == WishlistStatus.ACTIVE


def test_redeem_twice_reports_first_use(
    service: WishlistService, redemption: RedemptionService, clock
):
    wishlist = _create(service)
    redemption.redeem(wishlist.qr_token)
    first_use = clock.now
    clock.advance(minutes=5)

    with pytest.raises(ConflictError) as exc_info:
        redemption.redeem(wishlist.qr_token)

    assert exc_info.value.used_at == first_use
    assert service.get(wishlist.id).qr_token_used_at == first_use


def test_redeem_expired_wishlist_persists_expiry(
    service: WishlistService, redemption: RedemptionService, clock
):
    wishlist = _create(service)
    clock.advance(hours=24, seconds=1)

    with pytest.raises(ExpiredError) as exc_info:
        redemption.redeem(wishlist.qr_token)

    assert exc_info.value.expired_at == wishlist.expires_at
    stored = service.get(wishlist.id)
    assert stored.status == WishlistStatus.EXPIRED
    assert stored.qr_token_used_at is None


def test_redeem_exactly_at_expiry_succeeds(
    service: WishlistService, redemption: RedemptionService, clock
):
    wishlist = _create(service)
    clock.now = wishlist.expires_at

    assert redemption.redeem(wishlist.qr_token).status == WishlistStatus.PROCESSING


@pytest.mark.parametrize("terminal", ["cancel", "expire"])
def test_redeem_terminal_wishlist(
    service: WishlistService, redemption: RedemptionService, terminal: str
):
    wishlist = _create(service)
    getattr(service, terminal)(wishlist.id)

    with pytest.raises(InvalidStateError):
        redemption.redeem(wishlist.qr_token)


def test_mark_redeemed_wins_once(service: WishlistService, session: Session, clock):
    wishlist = _create(service)
    repo = WishlistRepository(session)

    assert repo.mark_redeemed(wishlist.id, clock.now) is True
    assert repo.mark_redeemed(wishlist.id, clock.now) is False


def test_redeem_reports_row_deleted_after_claim(
    service: WishlistService, redemption: RedemptionService, monkeypatch
):
    wishlist = _create(service)
    monkeypatch.setattr(redemption.repo, "find_by_id", lambda *args, **kwargs: None)

    with pytest.raises(NotFoundError, match="QR token not found"):
        redemption.redeem(wishlist.qr_token)


def test_concurrent_redemption_has_single_winner(tmp_path):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'race.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    SQLModel.metadata.create_all(engine)
    now = datetime(2026, 1, 5, 9, 30)

    with Session(engine) as session:
        created = WishlistService(session, clock=lambda: now).create("u1", ITEMS)
    token = created.body["wishlist"]["qr_token"]

    terminals = 8
    barrier = threading.Barrier(terminals)
    outcomes: list[object] = []

    def scan():
        with Session(engine) as session:
            service = RedemptionService(session, clock=lambda: now)
            barrier.wait()
            try:
                outcomes.append(service.redeem(token))
            except ConflictError as e:
                outcomes.append(e)

    threads = [threading.Thread(target=scan) for _ in range(terminals)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    winners = [o for o in outcomes if not isinstance(o, ConflictError)]
    losers = [o for o in outcomes if isinstance(o, ConflictError)]
    assert len(outcomes) == terminals
    assert len(winners) == 1
    assert len(losers) == terminals - 1
    assert all(loser.used_at == now for loser in losers)

    with Session(engine) as session:
        stored = WishlistRepository(session).find_by_token(token)
    assert stored is not None
    assert stored.status == WishlistStatus.PROCESSING
    assert stored.qr_token_used_at == now
    engine.dispose()
