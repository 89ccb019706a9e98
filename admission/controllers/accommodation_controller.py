"""Controller layer for occupancy stats, catalog upkeep and maintenance jobs."""

from __future__ import annotations

from typing import Literal, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field, field_validator

from admission.controllers.dependencies import (
    get_auth_service,
    get_consistency_service,
    get_overdue_sweeper,
    get_repository,
    get_stats_service,
    require_admin,
    to_http_exception,
)
from admission.domain.errors import AdmissionError
from admission.domain.models import (
    AdminStatus,
    GenderRestriction,
    LedgerCounts,
    OccupancySnapshot,
    PriceTerm,
    StatusBucket,
)
from admission.repository.data_repository import DataRepository
from admission.services.auth_service import (
    AdminTokenNotConfiguredError,
    AuthService,
    InvalidAdminTokenError,
)
from admission.services.maintenance_service import LedgerConsistencyService, OverdueSweeper
from admission.services.stats_service import StatsService
from admission.utils.logger import get_logger


logger = get_logger(__name__)

router = APIRouter(tags=["accommodations"])


class LoginRequest(BaseModel):
    admin_token: str = Field(min_length=1)
    admin_id: str = Field(default="admin", min_length=1, max_length=64)


class LoginResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    admin_id: str


class OccupancyResponse(BaseModel):
    accommodation_id: int
    max_bookings: int = Field(gt=0)
    approved_count: int = Field(ge=0)
    pending_count: int = Field(ge=0)
    total_count: int = Field(ge=0)
    occupancy_rate: float = Field(ge=0.0)
    available_slots: int
    status_bucket: StatusBucket
    overbooked_by: int = Field(ge=0)
    can_accept_bookings: bool

    @classmethod
    def from_domain(cls, snapshot: OccupancySnapshot) -> "OccupancyResponse":
        return cls(
            accommodation_id=snapshot.accommodation_id,
            max_bookings=snapshot.max_bookings,
            approved_count=snapshot.approved_count,
            pending_count=snapshot.pending_count,
            total_count=snapshot.total_count,
            occupancy_rate=snapshot.occupancy_rate,
            available_slots=snapshot.available_slots,
            status_bucket=snapshot.status_bucket,
            overbooked_by=snapshot.overbooked_by,
            can_accept_bookings=snapshot.can_accept_bookings,
        )


class OverviewRow(BaseModel):
    accommodation_id: int
    title: str
    admin_status: AdminStatus
    max_bookings: int
    approved_count: int
    pending_count: int
    total_count: int
    available_slots: int
    occupancy_rate: float
    status_bucket: StatusBucket
    overbooked_by: int
    can_accept_bookings: bool


class OverviewSummary(BaseModel):
    total_accommodations: int = Field(ge=0)
    available_accommodations: int = Field(ge=0)
    fully_booked_accommodations: int = Field(ge=0)
    total_booking_slots: int = Field(ge=0)
    total_approved_bookings: int = Field(ge=0)
    total_pending_bookings: int = Field(ge=0)
    average_occupancy_rate: float = Field(ge=0.0)
    overbooked_accommodations: int = Field(ge=0)
    status_buckets: dict[str, int]


class OverviewPagination(BaseModel):
    page: int = Field(ge=1)
    limit: int = Field(ge=1)
    pages: int = Field(ge=0)
    total_accommodations: int = Field(ge=0)


class OverviewResponse(BaseModel):
    summary: OverviewSummary
    accommodations: list[OverviewRow]
    pagination: OverviewPagination


class AccommodationUpsertRequest(BaseModel):
    title: str = Field(min_length=1, max_length=200)
    max_bookings: int = Field(ge=1)
    guest_capacity: int = Field(ge=1, le=6)
    gender_restriction: GenderRestriction = GenderRestriction.NONE
    price_term: PriceTerm = PriceTerm.MONTHLY
    price: int = Field(default=0, ge=0)
    admin_status: AdminStatus = AdminStatus.ACTIVE

    @field_validator("title")
    @classmethod
    def validate_title(cls, value: str) -> str:
        stripped = value.strip()
        if not stripped:
            raise ValueError("title must be non-empty")
        return stripped


class AccommodationResponse(BaseModel):
    accommodation_id: int
    title: str
    max_bookings: int
    guest_capacity: int
    gender_restriction: GenderRestriction
    price_term: PriceTerm
    price: int
    admin_status: AdminStatus
    occupancy: OccupancyResponse


class LedgerDriftResponse(BaseModel):
    accommodation_id: int
    stored: Optional[dict[str, int]] = None
    recount: dict[str, int]


class ReconcileResponse(BaseModel):
    checked: int = Field(ge=0)
    healed: list[LedgerDriftResponse]


class SweepResponse(BaseModel):
    scanned: int = Field(ge=0)
    marked_overdue: list[int]
    failed: dict[int, str]


def _counts_dict(counts: LedgerCounts) -> dict[str, int]:
    return {
        "approved_count": counts.approved_count,
        "pending_count": counts.pending_count,
        "total_count": counts.total_count,
    }


@router.post("/login", response_model=LoginResponse, tags=["auth"])
def login(
    payload: LoginRequest,
    auth_service: AuthService = Depends(get_auth_service),
) -> LoginResponse:
    try:
        token = auth_service.login(payload.admin_token, payload.admin_id)
    except AdminTokenNotConfiguredError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=str(exc),
        ) from exc
    except InvalidAdminTokenError as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=str(exc),
        ) from exc
    return LoginResponse(access_token=token, admin_id=payload.admin_id.strip())


@router.get(
    "/accommodations/overview",
    response_model=OverviewResponse,
    dependencies=[Depends(require_admin)],
)
def accommodations_overview(
    sort_by: str = Query(default="occupancy_rate"),
    sort_order: Literal["asc", "desc"] = Query(default="desc"),
    page: int = Query(default=1, ge=1),
    limit: Optional[int] = Query(default=None, ge=1),
    stats_service: StatsService = Depends(get_stats_service),
) -> OverviewResponse:
    try:
        result = stats_service.overview(
            sort_by=sort_by,
            sort_order=sort_order,
            page=page,
            limit=limit,
        )
    except AdmissionError as exc:
        raise to_http_exception(exc) from exc
    except Exception as exc:  # pragma: no cover - defensive fallback
        logger.exception("Unexpected overview failure")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to build booking overview",
        ) from exc
    return OverviewResponse(**result)


@router.get("/accommodations/{accommodation_id}/stats", response_model=OccupancyResponse)
def accommodation_stats(
    accommodation_id: int,
    stats_service: StatsService = Depends(get_stats_service),
) -> OccupancyResponse:
    try:
        return OccupancyResponse.from_domain(stats_service.get_stats(accommodation_id))
    except AdmissionError as exc:
        raise to_http_exception(exc) from exc


@router.put(
    "/accommodations/{accommodation_id}",
    response_model=AccommodationResponse,
    dependencies=[Depends(require_admin)],
)
def upsert_accommodation(
    accommodation_id: int,
    payload: AccommodationUpsertRequest,
    repository: DataRepository = Depends(get_repository),
    stats_service: StatsService = Depends(get_stats_service),
) -> AccommodationResponse:
    """Catalog edits; lowering max_bookings below the approved count is allowed."""
    if accommodation_id <= 0:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={
                "code": "validation_error",
                "message": "accommodation_id must be > 0",
                "field": "accommodation_id",
            },
        )
    accommodation = repository.upsert_accommodation(
        accommodation_id=accommodation_id,
        title=payload.title,
        max_bookings=payload.max_bookings,
        guest_capacity=payload.guest_capacity,
        gender_restriction=payload.gender_restriction,
        price_term=payload.price_term,
        price=payload.price,
        admin_status=payload.admin_status,
    )
    stats_service.invalidate(accommodation_id)
    snapshot = stats_service.get_stats(accommodation_id)
    return AccommodationResponse(
        accommodation_id=accommodation.accommodation_id,
        title=accommodation.title,
        max_bookings=accommodation.max_bookings,
        guest_capacity=accommodation.guest_capacity,
        gender_restriction=accommodation.gender_restriction,
        price_term=accommodation.price_term,
        price=accommodation.price,
        admin_status=accommodation.admin_status,
        occupancy=OccupancyResponse.from_domain(snapshot),
    )


@router.post(
    "/maintenance/reconcile",
    response_model=ReconcileResponse,
    tags=["maintenance"],
    dependencies=[Depends(require_admin)],
)
def reconcile_ledger(
    service: LedgerConsistencyService = Depends(get_consistency_service),
) -> ReconcileResponse:
    report = service.reconcile()
    return ReconcileResponse(
        checked=report.checked,
        healed=[
            LedgerDriftResponse(
                accommodation_id=drift.accommodation_id,
                stored=_counts_dict(drift.stored) if drift.stored is not None else None,
                recount=_counts_dict(drift.recount),
            )
            for drift in report.healed
        ],
    )


@router.post(
    "/maintenance/overdue_sweep",
    response_model=SweepResponse,
    tags=["maintenance"],
    dependencies=[Depends(require_admin)],
)
def overdue_sweep(
    sweeper: OverdueSweeper = Depends(get_overdue_sweeper),
) -> SweepResponse:
    result = sweeper.run_once()
    return SweepResponse(
        scanned=result.scanned,
        marked_overdue=result.marked_overdue,
        failed=result.failed,
    )
