"""Tests for error handling with RFC 7807 Problem Details."""

from datetime import datetime

import pytest
from fastapi.testclient import TestClient

from wishlist_service.domain.exceptions import (
    CatalogUnavailableError,
    ConflictError,
    DomainError,
    ExpiredError,
    ForbiddenError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from wishlist_service.presentation.error_handlers import problem_for_domain_error
from wishlist_service.presentation.problem_details import (
    PROBLEM_TYPE_BASE,
    ErrorCodes,
    ProblemDetailFactory,
)

USED_AT = datetime(2026, 1, 5, 9, 30)


def test_request_validation_error_returns_problem_details(client: TestClient):
    """Malformed request bodies are reported as 400 with field errors."""
    response = client.post(
        "/api/wishlists", json={"owner_id": "u1", "items": "not-a-list"}
    )

    assert response.status_code == 400
    data = response.json()

    assert data["type"] == f"{PROBLEM_TYPE_BASE}/validation-failed"
    assert data["title"] == "Validation Failed"
    assert data["status"] == 400
    assert data["instance"] == "/api/wishlists"
    assert data["code"] == ErrorCodes.VALIDATION_FAILED

    assert isinstance(data["errors"], list)
    error = data["errors"][0]
    assert error["field"].startswith("items")
    assert error["code"] == ErrorCodes.FIELD_INVALID_VALUE
    assert "message" in error


def test_missing_body_field_is_reported_as_required(client: TestClient):
    response = client.post("/api/pos/wishlists/fetch-by-qr")

    assert response.status_code == 400
    errors = response.json()["errors"]
    assert errors[0]["code"] == ErrorCodes.FIELD_REQUIRED


def test_domain_validation_error_returns_problem_details(client: TestClient):
    response = client.post(
        "/api/pos/wishlists/fetch-by-qr", json={"qr_token": "   "}
    )

    assert response.status_code == 400
    data = response.json()
    assert data["detail"] == "qr_token is required"
    assert data["code"] == ErrorCodes.VALIDATION_FAILED
    assert "errors" not in data


def test_not_found_returns_problem_details(client: TestClient):
    response = client.get("/api/wishlists/does-not-exist")

    assert response.status_code == 404
    data = response.json()
    assert data["type"] == f"{PROBLEM_TYPE_BASE}/not-found"
    assert data["title"] == "Not Found"
    assert data["detail"] == "Wishlist not found"
    assert data["instance"] == "/api/wishlists/does-not-exist"
    assert data["code"] == ErrorCodes.NOT_FOUND


@pytest.mark.parametrize(
    ("error", "status", "code"),
    [
        (ValidationError("bad"), 400, ErrorCodes.VALIDATION_FAILED),
        (NotFoundError("missing"), 404, ErrorCodes.NOT_FOUND),
        (ForbiddenError("not yours"), 403, ErrorCodes.FORBIDDEN),
        (ConflictError("busy"), 409, ErrorCodes.CONFLICT),
        (ConflictError("used", used_at=USED_AT), 409, ErrorCodes.QR_ALREADY_USED),
        (InvalidStateError("wrong state"), 400, ErrorCodes.INVALID_STATE),
        (ExpiredError("gone", expired_at=USED_AT), 410, ErrorCodes.EXPIRED),
        (CatalogUnavailableError("down"), 503, ErrorCodes.CATALOG_UNAVAILABLE),
        (DomainError("unknown"), 500, ErrorCodes.INTERNAL_ERROR),
    ],
)
def test_domain_errors_map_to_status(error, status, code):
    problem = problem_for_domain_error(error, "/api/test")

    assert problem.status == status
    assert problem.code == code
    assert problem.instance == "/api/test"


def test_conflict_carries_first_use():
    problem = ProblemDetailFactory.conflict(
        detail="QR code has already been used", used_at=USED_AT
    )

    dumped = problem.model_dump(exclude_none=True)
    assert dumped["used_at"] == "2026-01-05T09:30:00"
    assert dumped["type"] == f"{PROBLEM_TYPE_BASE}/conflict"


def test_expired_carries_expiry():
    problem = ProblemDetailFactory.expired(detail="gone", expired_at=USED_AT)

    assert problem.status == 410
    assert problem.expired_at == "2026-01-05T09:30:00"


def test_internal_error_has_generic_detail():
    problem = ProblemDetailFactory.internal_server_error(instance="/api/x")

    assert problem.status == 500
    assert problem.title == "Internal Server Error"
    assert problem.detail
