import logging
from typing import Any

from fastapi import Request


def log_wishlist_transition(
    wishlist_id: str,
    from_status: str | None,
    to_status: str,
    actor: str | None = None,
    logger_name: str = "wishlist.lifecycle",
    **kwargs: Any,
) -> None:
    """Log a wishlist status transition with consistent structure.

    Args:
        wishlist_id: The wishlist that changed
        from_status: Status before the transition (None on creation)
        to_status: Status after the transition
        actor: Who triggered it (POS terminal, owner, system)
        logger_name: Name of the logger to use
        **kwargs: Additional context data
    """
    logger = logging.getLogger(logger_name)

    log_data = {
        "wishlist_id": wishlist_id,
        "from_status": from_status,
        "to_status": to_status,
        "actor": actor,
        **kwargs,
    }

    logger.info(
        f"Wishlist {wishlist_id}: {from_status or '-'} -> {to_status}", extra=log_data
    )


def log_api_request(
    request: Request,
    response_status: int,
    process_time_ms: float | None = None,
    logger_name: str = "api",
) -> None:
    """Log API requests with consistent format.

    Args:
        request: FastAPI request object
        response_status: HTTP response status code
        process_time_ms: Request processing time in milliseconds
        logger_name: Name of the logger to use
    """
    logger = logging.getLogger(logger_name)

    log_data = {
        "method": request.method,
        "path": request.url.path,
        "status_code": response_status,
        "client_ip": _client_ip(request),
        "user_agent": request.headers.get("user-agent", "Unknown")[:100],
    }

    if process_time_ms is not None:
        log_data["process_time_ms"] = str(round(process_time_ms, 2))

    if response_status >= 500:
        log_level = logging.ERROR
    elif response_status >= 400:
        log_level = logging.WARNING
    else:
        log_level = logging.INFO

    message = f"{request.method} {request.url.path} - {response_status}"
    if process_time_ms is not None:
        message += f" ({process_time_ms:.1f}ms)"

    logger.log(log_level, message, extra=log_data)


def log_database_operation(
    operation: str,
    table: str,
    success: bool = True,
    logger_name: str = "database",
    **kwargs: Any,
) -> None:
    """Log database operations.

    Args:
        operation: Database operation (create, update, redeem, expire)
        table: Table name being operated on
        success: Whether the operation was successful
        logger_name: Name of the logger to use
        **kwargs: Additional context data
    """
    logger = logging.getLogger(logger_name)

    log_data = {"operation": operation, "table": table, "success": success, **kwargs}

    level = logging.INFO if success else logging.WARNING
    status = "succeeded" if success else "was refused"

    logger.log(level, f"Database {operation} on {table} {status}", extra=log_data)


def log_system_info(hostname: str, ip_address: str, debug_mode: bool) -> None:
    """Log system startup information.

    Args:
        hostname: Server hostname
        ip_address: Server IP address
        debug_mode: Whether debug mode is enabled
    """
    logger = logging.getLogger("system")

    logger.info(
        "Application startup",
        extra={
            "hostname": hostname,
            "ip_address": ip_address,
            "debug_mode": debug_mode,
        },
    )


def redact_token(token: str | None) -> str:
    """Shorten a QR token for logs; the full value is a bearer secret."""
    if not token:
        return "[EMPTY]"
    return f"{token[:6]}..." if len(token) > 6 else "[REDACTED]"


def _client_ip(request: Request) -> str:
    """Client IP with proxy support (X-Forwarded-For, X-Real-IP, direct)."""
    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for:
        client_ip = forwarded_for.split(",")[0].strip()
        if client_ip:
            return client_ip

    real_ip = request.headers.get("X-Real-IP")
    if real_ip:
        return real_ip.strip()

    if request.client and request.client.host:
        return str(request.client.host)
    return "unknown"
