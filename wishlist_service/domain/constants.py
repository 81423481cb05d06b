"""Domain business rules and constants."""

from enum import StrEnum
from typing import Final

# Business Rules - Core domain constraints
MAX_OWNER_ID_LENGTH: Final = 255
MAX_REF_LENGTH: Final = 100
MAX_TITLE_LENGTH: Final = 500
MAX_PRICE_LENGTH: Final = 32
CURRENCY_CODE_LENGTH: Final = 3
# Largest value a 32-bit INTEGER column holds
MAX_QUANTITY: Final = 2_147_483_647
DEFAULT_ITEM_TITLE: Final = "Unknown Product"
DEFAULT_QUANTITY: Final = 1

# Metadata keys the lifecycle engine writes
CANCELLATION_REASON_KEY: Final = "cancellation_reason"
EXTERNAL_ORDER_REF_KEY: Final = "external_order_ref"


class WishlistStatus(StrEnum):
    ACTIVE = "ACTIVE"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    EXPIRED = "EXPIRED"


TERMINAL_STATUSES: Final = frozenset(
    {WishlistStatus.COMPLETED, WishlistStatus.CANCELLED, WishlistStatus.EXPIRED}
)


class WishlistSource(StrEnum):
    KIOSK = "KIOSK"
    MOBILE_APP = "MOBILE_APP"


class IdempotencyStatus(StrEnum):
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class OperationType(StrEnum):
    CREATE_WISHLIST = "CREATE_WISHLIST"
