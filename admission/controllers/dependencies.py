"""Shared FastAPI dependency providers for controller layer."""

from __future__ import annotations

from typing import Any, Optional

from fastapi import Depends, Header, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from admission.domain.errors import (
    AdmissionError,
    CapacityExceededError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from admission.repository.data_repository import DataRepository
from admission.services.admission_service import AdmissionService
from admission.services.auth_service import (
    AdminTokenNotConfiguredError,
    AuthService,
    InvalidAdminTokenError,
)
from admission.services.maintenance_service import LedgerConsistencyService, OverdueSweeper
from admission.services.payment_gate import PaymentGateAdapter
from admission.services.stats_service import StatsService
from admission.utils.config import get_settings


bearer_scheme = HTTPBearer(auto_error=False)


def _state_service(request: Request, name: str, label: str) -> Any:
    service = getattr(request.app.state, name, None)
    if service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"{label} is not initialized",
        )
    return service


def get_auth_service(request: Request) -> AuthService:
    service = getattr(request.app.state, "auth_service", None)
    if service is None:
        service = AuthService(settings=get_settings())
        request.app.state.auth_service = service
    return service


def get_repository(request: Request) -> DataRepository:
    return _state_service(request, "repository", "Repository")


def get_admission_service(request: Request) -> AdmissionService:
    return _state_service(request, "admission_service", "Admission service")


def get_stats_service(request: Request) -> StatsService:
    return _state_service(request, "stats_service", "Stats service")


def get_payment_gate(request: Request) -> PaymentGateAdapter:
    return _state_service(request, "payment_gate", "Payment gate")


def get_overdue_sweeper(request: Request) -> OverdueSweeper:
    return _state_service(request, "overdue_sweeper", "Overdue sweeper")


def get_consistency_service(request: Request) -> LedgerConsistencyService:
    return _state_service(request, "consistency_service", "Ledger consistency service")


async def require_admin(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
    auth_service: AuthService = Depends(get_auth_service),
) -> str:
    """Resolve the acting admin id from the bearer session."""
    try:
        return auth_service.resolve_admin(
            credentials.credentials if credentials is not None else None
        )
    except (AdminTokenNotConfiguredError, InvalidAdminTokenError) as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=str(exc),
        ) from exc


async def get_requester_id(
    x_requester_id: Optional[str] = Header(default=None),
) -> str:
    """Authenticated user id; identity itself is resolved by the upstream gateway."""
    if x_requester_id is None or not x_requester_id.strip():
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="X-Requester-Id header is required",
        )
    return x_requester_id.strip()


def error_detail(exc: AdmissionError) -> dict[str, Any]:
    detail: dict[str, Any] = {"code": exc.code, "message": str(exc)}
    if isinstance(exc, ValidationError) and exc.field is not None:
        detail["field"] = exc.field
    if isinstance(exc, InvalidStateError) and exc.current_status is not None:
        detail["current_status"] = exc.current_status
    if isinstance(exc, CapacityExceededError):
        detail["approved_count"] = exc.approved_count
        detail["max_bookings"] = exc.max_bookings
    return detail


def to_http_exception(exc: AdmissionError) -> HTTPException:
    """Map the admission error taxonomy onto HTTP status codes."""
    if isinstance(exc, ValidationError):
        status_code = status.HTTP_400_BAD_REQUEST
    elif isinstance(exc, NotFoundError):
        status_code = status.HTTP_404_NOT_FOUND
    elif isinstance(exc, (InvalidStateError, CapacityExceededError)):
        status_code = status.HTTP_409_CONFLICT
    else:
        status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    return HTTPException(status_code=status_code, detail=error_detail(exc))
