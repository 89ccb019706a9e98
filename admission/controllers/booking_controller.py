"""HTTP controller layer for booking submission, decisions and payment signals."""

from __future__ import annotations

from datetime import date, datetime
from typing import Annotated, Literal, Optional, Union

from fastapi import APIRouter, Depends, Header, HTTPException, Query, status
from fastapi.security import HTTPAuthorizationCredentials
from pydantic import BaseModel, Field, field_validator

from admission.controllers.dependencies import (
    bearer_scheme,
    get_admission_service,
    get_auth_service,
    get_payment_gate,
    get_requester_id,
    require_admin,
    to_http_exception,
)
from admission.domain.errors import AdmissionError, NotFoundError
from admission.domain.models import (
    AccommodationBooking,
    BookingRequest,
    BookingStatus,
    BookingType,
    Decision,
    EscalationLevel,
    ProgramEnrollment,
)
from admission.services.admission_service import AdmissionService
from admission.services.auth_service import (
    AdminTokenNotConfiguredError,
    AuthService,
    InvalidAdminTokenError,
)
from admission.services.payment_gate import PaymentGateAdapter
from admission.utils.logger import get_logger


logger = get_logger(__name__)

router = APIRouter(tags=["bookings"])


class AccommodationBookingRequest(BaseModel):
    booking_type: Literal["accommodation"]
    accommodation_id: int = Field(gt=0)
    check_in: date
    check_out: date
    number_of_guests: int = Field(ge=1, le=6)


class ProgramEnrollmentRequest(BaseModel):
    booking_type: Literal["program"]
    program_id: int = Field(gt=0)


SubmitBookingRequest = Annotated[
    Union[AccommodationBookingRequest, ProgramEnrollmentRequest],
    Field(discriminator="booking_type"),
]


class DecisionRequest(BaseModel):
    decision: Decision
    admin_notes: Optional[str] = Field(default=None, max_length=500)
    force: bool = False

    @field_validator("admin_notes")
    @classmethod
    def strip_notes(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        stripped = value.strip()
        return stripped or None


class BookingResponse(BaseModel):
    request_id: int
    booking_type: BookingType
    accommodation_id: Optional[int] = None
    program_id: Optional[int] = None
    requester_id: str
    check_in: Optional[date] = None
    check_out: Optional[date] = None
    number_of_guests: int
    status: BookingStatus
    created_at: datetime
    decided_at: Optional[datetime] = None
    decided_by: Optional[str] = None
    admin_notes: Optional[str] = None
    payment_due_at: Optional[datetime] = None
    confirmed_at: Optional[datetime] = None
    overdue_at: Optional[datetime] = None
    released_at: Optional[datetime] = None
    released_by: Optional[str] = None

    @classmethod
    def from_domain(cls, request: BookingRequest) -> "BookingResponse":
        return cls(
            request_id=request.request_id,
            booking_type=request.booking_type,
            accommodation_id=request.accommodation_id,
            program_id=request.program_id,
            requester_id=request.requester_id,
            check_in=request.check_in,
            check_out=request.check_out,
            number_of_guests=request.number_of_guests,
            status=request.status,
            created_at=request.created_at,
            decided_at=request.decided_at,
            decided_by=request.decided_by,
            admin_notes=request.admin_notes,
            payment_due_at=request.payment_due_at,
            confirmed_at=request.confirmed_at,
            overdue_at=request.overdue_at,
            released_at=request.released_at,
            released_by=request.released_by,
        )


class BookingListResponse(BaseModel):
    bookings: list[BookingResponse]
    total: int = Field(ge=0)
    page: int = Field(ge=1)
    limit: int = Field(ge=1)
    pages: int = Field(ge=0)


class PendingListResponse(BaseModel):
    bookings: list[BookingResponse]
    count: int = Field(ge=0)


class AdminBookingListResponse(BookingListResponse):
    status_counts: dict[BookingStatus, int]


class OverdueBookingResponse(BaseModel):
    booking: BookingResponse
    days_past_due: int = Field(ge=1)
    escalation_level: EscalationLevel


class OverdueSummaryResponse(BaseModel):
    total_overdue: int = Field(ge=0)
    escalation_breakdown: dict[EscalationLevel, int]
    average_days_overdue: int = Field(ge=0)


class OverdueListResponse(BaseModel):
    bookings: list[OverdueBookingResponse]
    summary: OverdueSummaryResponse


def _unexpected(action: str, exc: Exception) -> HTTPException:
    logger.exception("Unexpected failure while trying to %s", action)
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail=f"Failed to {action}. Please try again.",
    )


@router.post(
    "/bookings",
    response_model=BookingResponse,
    status_code=status.HTTP_201_CREATED,
)
def submit_booking(
    payload: SubmitBookingRequest,
    requester_id: str = Depends(get_requester_id),
    service: AdmissionService = Depends(get_admission_service),
) -> BookingResponse:
    """Create a pending request; capacity is checked at approval time."""
    if isinstance(payload, AccommodationBookingRequest):
        submission: Union[AccommodationBooking, ProgramEnrollment] = AccommodationBooking(
            accommodation_id=payload.accommodation_id,
            requester_id=requester_id,
            check_in=payload.check_in,
            check_out=payload.check_out,
            number_of_guests=payload.number_of_guests,
        )
    else:
        submission = ProgramEnrollment(program_id=payload.program_id, requester_id=requester_id)
    try:
        return BookingResponse.from_domain(service.submit(submission))
    except AdmissionError as exc:
        raise to_http_exception(exc) from exc
    except Exception as exc:  # pragma: no cover - defensive fallback
        raise _unexpected("submit booking", exc) from exc


@router.get("/bookings/mine", response_model=BookingListResponse)
def my_bookings(
    status_filter: Optional[BookingStatus] = Query(default=None, alias="status"),
    booking_type: Optional[BookingType] = Query(default=None),
    page: int = Query(default=1, ge=1),
    limit: Optional[int] = Query(default=None, ge=1),
    requester_id: str = Depends(get_requester_id),
    service: AdmissionService = Depends(get_admission_service),
) -> BookingListResponse:
    try:
        result = service.my_bookings(
            requester_id,
            status=status_filter,
            booking_type=booking_type,
            page=page,
            limit=limit,
        )
    except AdmissionError as exc:
        raise to_http_exception(exc) from exc
    return BookingListResponse(
        bookings=[BookingResponse.from_domain(item) for item in result.items],
        total=result.total,
        page=result.page,
        limit=result.limit,
        pages=result.pages,
    )


@router.get("/bookings/pending", response_model=PendingListResponse)
def pending_bookings(
    accommodation_id: Optional[int] = Query(default=None, gt=0),
    _admin_id: str = Depends(require_admin),
    service: AdmissionService = Depends(get_admission_service),
) -> PendingListResponse:
    """Oldest first, the order an admin should work through them."""
    try:
        pending = service.pending_for_admin(accommodation_id)
    except AdmissionError as exc:
        raise to_http_exception(exc) from exc
    return PendingListResponse(
        bookings=[BookingResponse.from_domain(item) for item in pending],
        count=len(pending),
    )


@router.get("/bookings", response_model=AdminBookingListResponse)
def all_bookings(
    status_filter: Optional[BookingStatus] = Query(default=None, alias="status"),
    booking_type: Optional[BookingType] = Query(default=None),
    page: int = Query(default=1, ge=1),
    limit: Optional[int] = Query(default=None, ge=1),
    _admin_id: str = Depends(require_admin),
    service: AdmissionService = Depends(get_admission_service),
) -> AdminBookingListResponse:
    """Every booking, newest first, with counts per status across all bookings."""
    try:
        result = service.all_bookings(
            status=status_filter,
            booking_type=booking_type,
            page=page,
            limit=limit,
        )
    except AdmissionError as exc:
        raise to_http_exception(exc) from exc
    return AdminBookingListResponse(
        bookings=[BookingResponse.from_domain(item) for item in result.items],
        total=result.total,
        page=result.page,
        limit=result.limit,
        pages=result.pages,
        status_counts=result.status_counts or {},
    )


@router.get("/bookings/overdue", response_model=OverdueListResponse)
def overdue_bookings(
    _admin_id: str = Depends(require_admin),
    service: AdmissionService = Depends(get_admission_service),
) -> OverdueListResponse:
    """Unpaid bookings past their deadline, most overdue first."""
    report = service.overdue_for_admin()
    return OverdueListResponse(
        bookings=[
            OverdueBookingResponse(
                booking=BookingResponse.from_domain(item.request),
                days_past_due=item.days_past_due,
                escalation_level=item.escalation_level,
            )
            for item in report.items
        ],
        summary=OverdueSummaryResponse(
            total_overdue=len(report.items),
            escalation_breakdown=report.escalation_breakdown,
            average_days_overdue=report.average_days_overdue,
        ),
    )


@router.get("/bookings/{request_id}", response_model=BookingResponse)
def get_booking(
    request_id: int,
    x_requester_id: Optional[str] = Header(default=None),
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
    auth_service: AuthService = Depends(get_auth_service),
    service: AdmissionService = Depends(get_admission_service),
) -> BookingResponse:
    """Requesters see their own bookings; admins see any."""
    try:
        booking = service.get_request(request_id)
    except AdmissionError as exc:
        raise to_http_exception(exc) from exc

    requester_id = x_requester_id.strip() if x_requester_id else ""
    if requester_id:
        if booking.requester_id != requester_id:
            raise to_http_exception(NotFoundError(f"Booking request {request_id} not found"))
        return BookingResponse.from_domain(booking)

    try:
        auth_service.resolve_admin(credentials.credentials if credentials is not None else None)
    except (AdminTokenNotConfiguredError, InvalidAdminTokenError) as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=str(exc),
        ) from exc
    return BookingResponse.from_domain(booking)


@router.post("/bookings/{request_id}/decision", response_model=BookingResponse)
def decide_booking(
    request_id: int,
    payload: DecisionRequest,
    admin_id: str = Depends(require_admin),
    service: AdmissionService = Depends(get_admission_service),
) -> BookingResponse:
    try:
        decided = service.decide(
            request_id,
            payload.decision,
            admin_id=admin_id,
            admin_notes=payload.admin_notes,
            force=payload.force,
        )
        return BookingResponse.from_domain(decided)
    except AdmissionError as exc:
        raise to_http_exception(exc) from exc
    except Exception as exc:  # pragma: no cover - defensive fallback
        raise _unexpected("record decision", exc) from exc


@router.post("/bookings/{request_id}/cancel", response_model=BookingResponse)
def cancel_booking(
    request_id: int,
    requester_id: str = Depends(get_requester_id),
    service: AdmissionService = Depends(get_admission_service),
) -> BookingResponse:
    try:
        return BookingResponse.from_domain(service.cancel(request_id, requester_id))
    except AdmissionError as exc:
        raise to_http_exception(exc) from exc
    except Exception as exc:  # pragma: no cover - defensive fallback
        raise _unexpected("cancel booking", exc) from exc


@router.post("/bookings/{request_id}/release", response_model=BookingResponse)
def release_booking(
    request_id: int,
    admin_id: str = Depends(require_admin),
    service: AdmissionService = Depends(get_admission_service),
) -> BookingResponse:
    """Free the slot held by an overdue booking."""
    try:
        return BookingResponse.from_domain(service.release_overdue(request_id, admin_id))
    except AdmissionError as exc:
        raise to_http_exception(exc) from exc
    except Exception as exc:  # pragma: no cover - defensive fallback
        raise _unexpected("release booking", exc) from exc


@router.post(
    "/payments/{request_id}/verified",
    response_model=BookingResponse,
    tags=["payments"],
    dependencies=[Depends(require_admin)],
)
def payment_verified(
    request_id: int,
    gate: PaymentGateAdapter = Depends(get_payment_gate),
) -> BookingResponse:
    try:
        return BookingResponse.from_domain(gate.payment_verified(request_id))
    except AdmissionError as exc:
        raise to_http_exception(exc) from exc
    except Exception as exc:  # pragma: no cover - defensive fallback
        raise _unexpected("record verified payment", exc) from exc


@router.post(
    "/payments/{request_id}/overdue",
    response_model=BookingResponse,
    tags=["payments"],
    dependencies=[Depends(require_admin)],
)
def payment_overdue(
    request_id: int,
    gate: PaymentGateAdapter = Depends(get_payment_gate),
) -> BookingResponse:
    try:
        return BookingResponse.from_domain(gate.payment_overdue(request_id))
    except AdmissionError as exc:
        raise to_http_exception(exc) from exc
    except Exception as exc:  # pragma: no cover - defensive fallback
        raise _unexpected("record overdue payment", exc) from exc
