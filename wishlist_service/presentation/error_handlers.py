"""Centralized error handling for the presentation layer."""

from typing import Any

from fastapi import Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from ..domain.exceptions import (
    CatalogUnavailableError,
    ConflictError,
    DomainError,
    ExpiredError,
    ForbiddenError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from .problem_details import ErrorCodes, ProblemDetail, ProblemDetailFactory


def problem_response(problem: ProblemDetail) -> JSONResponse:
    return JSONResponse(
        status_code=problem.status,
        content=problem.model_dump(exclude_none=True),
    )


def problem_for_domain_error(error: DomainError, instance: str) -> ProblemDetail:
    """Map a domain error to its problem document and HTTP status."""
    if isinstance(error, ValidationError):
        return ProblemDetailFactory.validation_failed(
            detail=error.message, instance=instance
        )
    if isinstance(error, NotFoundError):
        return ProblemDetailFactory.not_found(detail=error.message, instance=instance)
    if isinstance(error, ForbiddenError):
        # Same wording whether or not the wishlist exists
        return ProblemDetailFactory.forbidden(detail=error.message, instance=instance)
    if isinstance(error, ConflictError):
        return ProblemDetailFactory.conflict(
            detail=error.message, instance=instance, used_at=error.used_at
        )
    if isinstance(error, InvalidStateError):
        return ProblemDetailFactory.invalid_state(
            detail=error.message, instance=instance
        )
    if isinstance(error, ExpiredError):
        return ProblemDetailFactory.expired(
            detail=error.message, instance=instance, expired_at=error.expired_at
        )
    if isinstance(error, CatalogUnavailableError):
        return ProblemDetailFactory.service_unavailable(
            detail=error.message, instance=instance
        )
    return ProblemDetailFactory.internal_server_error(instance=instance)


def handle_domain_error(error: DomainError, request: Request) -> JSONResponse:
    """Convert domain errors to RFC 7807 responses."""
    return problem_response(problem_for_domain_error(error, str(request.url.path)))


def handle_request_validation_error(
    error: RequestValidationError, request: Request
) -> JSONResponse:
    """Convert request-shape errors into a 400 problem with field errors."""
    problem = ProblemDetailFactory.validation_failed(
        detail="Request validation failed",
        instance=str(request.url.path),
        field_errors=_extract_field_errors(error),
    )
    return problem_response(problem)


def _extract_field_errors(error: RequestValidationError) -> list[dict[str, Any]]:
    field_errors = []
    for item in error.errors():
        field_name = ".".join(str(loc) for loc in item["loc"] if loc != "body")
        field_errors.append(
            {
                "field": field_name or "unknown",
                "code": (
                    ErrorCodes.FIELD_REQUIRED
                    if item["type"] == "missing"
                    else ErrorCodes.FIELD_INVALID_VALUE
                ),
                "message": item["msg"],
            }
        )
    return field_errors
