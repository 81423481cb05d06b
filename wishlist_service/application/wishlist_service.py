"""Application layer - Wishlist lifecycle.

ACTIVE -> PROCESSING (QR redeemed) -> COMPLETED, with CANCELLED and EXPIRED
reachable from any state. Expiry is lazy: there is no sweeper, the first
access past ``expires_at`` writes EXPIRED.
"""

import secrets
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Final

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session

from ..config import Settings, settings
from ..constants import MAX_SEARCH_LIMIT
from ..domain.clock import utc_now
from ..domain.constants import (
    CANCELLATION_REASON_KEY,
    EXTERNAL_ORDER_REF_KEY,
    OperationType,
    WishlistSource,
    WishlistStatus,
)
from ..domain.entities import Wishlist, parse_items, validate_owner_id
from ..domain.exceptions import (
    ConflictError,
    ExpiredError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from ..infrastructure.database.repositories import WishlistRepository
from ..logging_config import get_logger
from ..logging_utils import log_database_operation, log_wishlist_transition
from ..metrics import record_transition, record_wishlist_created
from .catalog import ProductCatalog, enrich_items
from .idempotency_service import IdempotencyLedger, fingerprint
from .serializers import serialize_status, serialize_wishlist

logger: Final = get_logger(__name__)

# token collisions are astronomically unlikely; this only bounds the loop
TOKEN_ATTEMPTS: Final = 3
# optimistic metadata merges retried before giving up
WRITE_ATTEMPTS: Final = 3


@dataclass(frozen=True)
class CreateResult:
    """Response body of a create call and whether it came from the ledger."""

    body: dict[str, Any]
    replayed: bool = False


def _parse_source(source: Any) -> WishlistSource:
    try:
        return WishlistSource(source)
    except ValueError as e:
        raise ValidationError(f"Unknown wishlist source: {source!r}") from e


def _parse_metadata(metadata: Any) -> dict[str, Any]:
    if metadata is None:
        return {}
    if not isinstance(metadata, dict):
        raise ValidationError("metadata must be an object")
    return dict(metadata)


class WishlistService:
    """Application service for the wishlist state machine."""

    def __init__(
        self,
        session: Session,
        ttl: timedelta = timedelta(hours=24),
        max_items: int = 50,
        default_currency: str = "HKD",
        token_bytes: int = 32,
        default_processed_by: str = "POS",
        catalog: ProductCatalog | None = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.repo = WishlistRepository(session)
        self.ledger = IdempotencyLedger(session, clock)
        self.ttl = ttl
        self.max_items = max_items
        self.default_currency = default_currency
        self.token_bytes = token_bytes
        self.default_processed_by = default_processed_by
        self.catalog = catalog
        self.clock = clock

    @classmethod
    def from_settings(
        cls,
        session: Session,
        config: Settings = settings,
        catalog: ProductCatalog | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> "WishlistService":
        return cls(
            session,
            ttl=timedelta(hours=config.wishlist_ttl_hours),
            max_items=config.max_items_per_wishlist,
            default_currency=config.default_currency,
            token_bytes=config.qr_token_bytes,
            default_processed_by=config.default_processed_by,
            catalog=catalog,
            clock=clock,
        )

    # Creation

    def create(
        self,
        owner_id: Any,
        items: Any,
        source: Any = WishlistSource.KIOSK,
        metadata: Any = None,
        idempotency_key: str | None = None,
        collection_id: str | None = None,
    ) -> CreateResult:
        """Create an ACTIVE wishlist with a fresh QR token.

        With an idempotency key, a completed earlier request is replayed
        verbatim instead of creating a second wishlist.

        Raises:
            ValidationError: If the owner, items, source or metadata are invalid
            ConflictError: If the same key is still being processed
        """
        owner = validate_owner_id(owner_id)
        parsed_items = parse_items(items, self.default_currency, self.max_items)
        wishlist_source = _parse_source(source)
        wishlist_metadata = _parse_metadata(metadata)

        if idempotency_key:
            decision = self.ledger.begin_or_replay(
                idempotency_key,
                OperationType.CREATE_WISHLIST,
                fingerprint(
                    {
                        "owner_id": owner,
                        "items": items,
                        "source": wishlist_source,
                        "metadata": wishlist_metadata,
                        "collection_id": collection_id,
                    }
                ),
            )
            if decision.replay_response is not None:
                return CreateResult(body=decision.replay_response, replayed=True)

        try:
            wishlist = self._insert(
                owner,
                enrich_items(parsed_items, self.catalog),
                wishlist_source,
                wishlist_metadata,
                collection_id,
            )
        except Exception:
            if idempotency_key:
                self.ledger.fail(idempotency_key)
            raise

        body = {"wishlist": serialize_wishlist(wishlist)}
        if idempotency_key:
            self.ledger.complete(idempotency_key, body, wishlist.id)

        record_wishlist_created(wishlist_source)
        log_wishlist_transition(
            wishlist.id, None, wishlist.status, actor=owner, source=wishlist_source
        )
        return CreateResult(body=body)

    def _insert(
        self,
        owner_id: str,
        items: list,
        source: WishlistSource,
        metadata: dict[str, Any],
        collection_id: str | None,
    ) -> Wishlist:
        now = self.clock()
        attempt = 1
        while True:
            candidate = Wishlist(
                id=str(uuid.uuid4()),
                owner_id=owner_id,
                source=source,
                qr_token=secrets.token_hex(self.token_bytes),
                expires_at=now + self.ttl,
                collection_id=collection_id,
                metadata=metadata,
                created_at=now,
                updated_at=now,
                items=items,
            )
            try:
                wishlist = self.repo.add(candidate)
                break
            except IntegrityError:
                if attempt >= TOKEN_ATTEMPTS:
                    raise
                logger.warning("Wishlist insert collided, retrying", attempt=attempt)
                attempt += 1

        log_database_operation(
            operation="create",
            table="wishlists",
            wishlist_id=wishlist.id,
            item_count=len(wishlist.items),
        )
        return wishlist

    # Reads

    def get(self, wishlist_id: str, owner_id: str | None = None) -> Wishlist:
        """Fetch a wishlist with items.

        Side effect: an overdue ACTIVE wishlist is persisted as EXPIRED.

        Raises:
            NotFoundError: If missing or owned by someone else
        """
        wishlist = self._load(wishlist_id, owner_id)
        now = self.clock()
        if wishlist.is_overdue(now):
            return self._expire_on_access(wishlist, now)
        return wishlist

    def search(
        self,
        owner_id: str | None = None,
        status: WishlistStatus | None = None,
        source: WishlistSource | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[Wishlist], int]:
        """Filter wishlists, newest first.

        Side effect: overdue ACTIVE wishlists within the owner/source filter
        are persisted as EXPIRED before the page is read.
        """
        if not 1 <= limit <= MAX_SEARCH_LIMIT:
            raise ValidationError(f"limit must be between 1 and {MAX_SEARCH_LIMIT}")
        if offset < 0:
            raise ValidationError("offset must not be negative")

        expired = self.repo.expire_overdue(self.clock(), owner_id, source)
        if expired:
            logger.info("Expired overdue wishlists on search", count=expired)
            record_transition(WishlistStatus.EXPIRED)

        return self.repo.search(owner_id, status, source, limit, offset)

    def get_status(self, wishlist_id: str) -> dict[str, Any]:
        """Status summary for POS terminals. Materializes lazy expiry like ``get``."""
        wishlist = self.get(wishlist_id)
        return serialize_status(wishlist, self.clock())

    # Mutations

    def update_items(
        self,
        wishlist_id: str,
        items: Any,
        owner_id: str | None = None,
        metadata: Any = None,
    ) -> Wishlist:
        """Replace the whole item set and optionally the metadata.

        ``items=None`` together with ``metadata`` edits only the metadata.

        Raises:
            ValidationError: If the items are invalid
            InvalidStateError: If the wishlist is not ACTIVE
            ExpiredError: If it is ACTIVE but past its expiry (persisted as EXPIRED)
        """
        wishlist = self._load(wishlist_id, owner_id)
        new_metadata = _parse_metadata(metadata) if metadata is not None else None
        parsed_items = (
            None
            if items is None and new_metadata is not None
            else parse_items(items, self.default_currency, self.max_items)
        )

        now = self.clock()
        self._require_active(wishlist, now, "update")

        if not self.repo.replace_items(wishlist.id, parsed_items, now, new_metadata):
            current = self._load(wishlist.id)
            raise InvalidStateError(f"Cannot update a {current.status} wishlist")

        log_database_operation(
            operation="replace_items",
            table="wishlist_items",
            wishlist_id=wishlist.id,
            item_count=len(parsed_items) if parsed_items is not None else None,
            metadata_replaced=new_metadata is not None,
        )
        return self._load(wishlist.id)

    def generate_qr(self, wishlist_id: str, owner_id: str | None = None) -> Wishlist:
        """Return the wishlist whose existing token should be rendered.

        The token is fixed at creation and never regenerated.

        Raises:
            InvalidStateError: If the wishlist is not ACTIVE
            ExpiredError: If it is past its expiry (persisted as EXPIRED)
        """
        wishlist = self._load(wishlist_id, owner_id)
        self._require_active(wishlist, self.clock(), "generate a QR code for")
        return wishlist

    def complete(
        self,
        wishlist_id: str,
        processed_by: str | None = None,
        external_order_ref: str | None = None,
    ) -> Wishlist:
        """PROCESSING -> COMPLETED after the POS finished the sale.

        Raises:
            InvalidStateError: If the wishlist is not PROCESSING
        """
        wishlist = self._load(wishlist_id)
        if wishlist.status != WishlistStatus.PROCESSING:
            raise InvalidStateError(
                f"Cannot complete a {wishlist.status} wishlist, it must be PROCESSING"
            )

        metadata = dict(wishlist.metadata)
        if external_order_ref:
            metadata[EXTERNAL_ORDER_REF_KEY] = external_order_ref
        actor = processed_by or self.default_processed_by

        if not self.repo.complete(wishlist.id, self.clock(), actor, metadata):
            current = self._load(wishlist.id)
            raise InvalidStateError(
                f"Cannot complete a {current.status} wishlist, it must be PROCESSING"
            )

        self._record_transition(wishlist, WishlistStatus.COMPLETED, actor)
        return self._load(wishlist.id)

    def cancel(
        self,
        wishlist_id: str,
        reason: str | None = None,
        owner_id: str | None = None,
    ) -> Wishlist:
        """Force CANCELLED from any state; repeated calls re-assert it.

        The reason is merged into the metadata the row holds at write time:
        if the wishlist changes between read and write, it is re-read and the
        merge retried.

        Raises:
            ConflictError: If the wishlist kept changing under every attempt
        """
        wishlist = self._load(wishlist_id, owner_id)
        if not reason:
            self.repo.set_status(wishlist.id, WishlistStatus.CANCELLED, self.clock())
        else:
            for attempt in range(1, WRITE_ATTEMPTS + 1):
                metadata = {**wishlist.metadata, CANCELLATION_REASON_KEY: reason}
                if self.repo.set_status(
                    wishlist.id,
                    WishlistStatus.CANCELLED,
                    self.clock(),
                    metadata,
                    expected=wishlist,
                ):
                    break
                logger.info(
                    "Wishlist changed during cancel, retrying",
                    wishlist_id=wishlist.id,
                    attempt=attempt,
                )
                wishlist = self._load(wishlist.id)
            else:
                raise ConflictError(
                    "Wishlist changed concurrently, retry the cancellation"
                )

        self._record_transition(
            wishlist, WishlistStatus.CANCELLED, owner_id, reason=reason
        )
        return self._load(wishlist.id)

    def expire(self, wishlist_id: str) -> Wishlist:
        """Administrative override: force EXPIRED from any state."""
        wishlist = self._load(wishlist_id)
        self.repo.set_status(wishlist.id, WishlistStatus.EXPIRED, self.clock())
        self._record_transition(wishlist, WishlistStatus.EXPIRED, "admin")
        return self._load(wishlist.id)

    # Helpers

    def _load(self, wishlist_id: str, owner_id: str | None = None) -> Wishlist:
        wishlist = self.repo.find_by_id(wishlist_id, owner_id)
        if wishlist is None:
            raise NotFoundError("Wishlist not found")
        return wishlist

    def _require_active(self, wishlist: Wishlist, now: datetime, action: str) -> None:
        if wishlist.is_overdue(now):
            self._expire_on_access(wishlist, now)
            raise ExpiredError("Wishlist has expired", expired_at=wishlist.expires_at)
        if wishlist.status != WishlistStatus.ACTIVE:
            raise InvalidStateError(f"Cannot {action} a {wishlist.status} wishlist")

    def _expire_on_access(self, wishlist: Wishlist, now: datetime) -> Wishlist:
        # Conditional on ACTIVE, so concurrent readers converge
        if self.repo.expire_if_active(wishlist.id, now):
            self._record_transition(wishlist, WishlistStatus.EXPIRED, "system")
        return self._load(wishlist.id)

    def _record_transition(
        self,
        wishlist: Wishlist,
        to_status: WishlistStatus,
        actor: str | None,
        **kwargs: Any,
    ) -> None:
        record_transition(to_status)
        log_wishlist_transition(
            wishlist.id, wishlist.status, to_status, actor=actor, **kwargs
        )
