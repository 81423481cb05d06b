"""RFC 7807 Problem Details for HTTP APIs."""

from datetime import datetime
from typing import Any, Final

from pydantic import BaseModel, ConfigDict, Field

PROBLEM_TYPE_BASE: Final = "https://wishlist-service.local/problems"


class ErrorCodes:
    """Machine-readable error codes used in problem responses."""

    VALIDATION_FAILED = "validation_failed"
    FIELD_REQUIRED = "field_required"
    FIELD_INVALID_VALUE = "field_invalid_value"
    NOT_FOUND = "not_found"
    FORBIDDEN = "forbidden"
    CONFLICT = "conflict"
    QR_ALREADY_USED = "qr_already_used"
    INVALID_STATE = "invalid_state"
    EXPIRED = "expired"
    CATALOG_UNAVAILABLE = "catalog_unavailable"
    INTERNAL_ERROR = "internal_error"


class ProblemDetail(BaseModel):
    """Base problem document; extension members are allowed."""

    model_config = ConfigDict(extra="allow")

    type: str = Field(description="URI identifying the problem type")
    title: str = Field(description="Short, human-readable summary of the type")
    status: int = Field(description="HTTP status code")
    detail: str | None = Field(None, description="Explanation of this occurrence")
    instance: str | None = Field(None, description="Request path that failed")
    code: str | None = Field(None, description="Machine-readable error code")


class ValidationProblemDetail(ProblemDetail):
    errors: list[dict[str, Any]] | None = Field(
        None, description="Field-level validation errors"
    )


class ConflictProblemDetail(ProblemDetail):
    used_at: str | None = Field(
        None, description="When the QR token was first redeemed"
    )


class ExpiredProblemDetail(ProblemDetail):
    expired_at: str | None = Field(None, description="When the wishlist expired")


def _problem_type(slug: str) -> str:
    return f"{PROBLEM_TYPE_BASE}/{slug}"


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


class ProblemDetailFactory:
    """Builds the problem documents the API returns."""

    @staticmethod
    def validation_failed(
        detail: str,
        instance: str | None = None,
        field_errors: list[dict[str, Any]] | None = None,
    ) -> ValidationProblemDetail:
        return ValidationProblemDetail(
            type=_problem_type("validation-failed"),
            title="Validation Failed",
            status=400,
            detail=detail,
            instance=instance,
            code=ErrorCodes.VALIDATION_FAILED,
            errors=field_errors or None,
        )

    @staticmethod
    def not_found(detail: str, instance: str | None = None) -> ProblemDetail:
        return ProblemDetail(
            type=_problem_type("not-found"),
            title="Not Found",
            status=404,
            detail=detail,
            instance=instance,
            code=ErrorCodes.NOT_FOUND,
        )

    @staticmethod
    def forbidden(detail: str, instance: str | None = None) -> ProblemDetail:
        return ProblemDetail(
            type=_problem_type("forbidden"),
            title="Forbidden",
            status=403,
            detail=detail,
            instance=instance,
            code=ErrorCodes.FORBIDDEN,
        )

    @staticmethod
    def conflict(
        detail: str,
        instance: str | None = None,
        used_at: datetime | None = None,
    ) -> ConflictProblemDetail:
        return ConflictProblemDetail(
            type=_problem_type("conflict"),
            title="Conflict",
            status=409,
            detail=detail,
            instance=instance,
            code=ErrorCodes.QR_ALREADY_USED if used_at else ErrorCodes.CONFLICT,
            used_at=_iso(used_at),
        )

    @staticmethod
    def invalid_state(detail: str, instance: str | None = None) -> ProblemDetail:
        return ProblemDetail(
            type=_problem_type("invalid-state"),
            title="Invalid State",
            status=400,
            detail=detail,
            instance=instance,
            code=ErrorCodes.INVALID_STATE,
        )

    @staticmethod
    def expired(
        detail: str,
        instance: str | None = None,
        expired_at: datetime | None = None,
    ) -> ExpiredProblemDetail:
        return ExpiredProblemDetail(
            type=_problem_type("expired"),
            title="Expired",
            status=410,
            detail=detail,
            instance=instance,
            code=ErrorCodes.EXPIRED,
            expired_at=_iso(expired_at),
        )

    @staticmethod
    def service_unavailable(detail: str, instance: str | None = None) -> ProblemDetail:
        return ProblemDetail(
            type=_problem_type("catalog-unavailable"),
            title="Service Unavailable",
            status=503,
            detail=detail,
            instance=instance,
            code=ErrorCodes.CATALOG_UNAVAILABLE,
        )

    @staticmethod
    def internal_server_error(
        detail: str = "An unexpected error occurred. Please try again.",
        instance: str | None = None,
    ) -> ProblemDetail:
        return ProblemDetail(
            type=_problem_type("internal-error"),
            title="Internal Server Error",
            status=500,
            detail=detail,
            instance=instance,
            code=ErrorCodes.INTERNAL_ERROR,
        )
