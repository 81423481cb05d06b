"""Infrastructure and technical constants."""

from typing import Final

# Technical configuration constants
DEFAULT_PORT: Final = 8000
MIN_QR_TOKEN_BYTES: Final = 16
DEFAULT_SEARCH_LIMIT: Final = 50
MAX_SEARCH_LIMIT: Final = 200
DEFAULT_PRODUCT_LIMIT: Final = 50
MAX_PRODUCT_LIMIT: Final = 250
