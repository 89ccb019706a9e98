"""Adapter translating external payment signals into booking transitions."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Callable, Iterable, Optional

from admission.domain.errors import AdmissionError
from admission.domain.models import BookingRequest
from admission.services.admission_service import AdmissionService
from admission.utils.logger import get_logger


logger = get_logger(__name__)

PAYMENT_GATE_ACTOR = "payment_gate"


class PaymentSignalKind(str, Enum):
    VERIFIED = "verified"
    OVERDUE = "overdue"


@dataclass(frozen=True)
class PaymentSignal:
    request_id: int
    kind: PaymentSignalKind
    occurred_at: Optional[datetime] = None


@dataclass
class PollResult:
    processed: int = 0
    failed: dict[int, str] = field(default_factory=dict)


class PaymentGateAdapter:
    """Sole trigger for `confirm` and `mark_overdue`.

    Signals can be pushed one at a time or pulled in batches from a polling
    source; both paths end in the same admission-service calls.
    """

    def __init__(self, admission_service: AdmissionService) -> None:
        self._admission = admission_service

    def payment_verified(self, request_id: int) -> BookingRequest:
        return self._admission.confirm(request_id, actor_id=PAYMENT_GATE_ACTOR)

    def payment_overdue(self, request_id: int, now: Optional[datetime] = None) -> BookingRequest:
        return self._admission.mark_overdue(request_id, now=now, actor_id=PAYMENT_GATE_ACTOR)

    def handle(self, signal: PaymentSignal) -> BookingRequest:
        if signal.kind is PaymentSignalKind.VERIFIED:
            return self.payment_verified(signal.request_id)
        return self.payment_overdue(signal.request_id, now=signal.occurred_at)

    def poll(self, source: Callable[[], Iterable[PaymentSignal]]) -> PollResult:
        """Drain one batch from `source`; a bad signal does not stop the batch."""
        result = PollResult()
        for signal in source():
            try:
                self.handle(signal)
            except AdmissionError as exc:
                logger.warning(
                    "Payment signal %s for request %s rejected: %s",
                    signal.kind.value,
                    signal.request_id,
                    exc,
                )
                result.failed[signal.request_id] = exc.code
                continue
            result.processed += 1
        logger.info(
            "Payment poll processed=%s failed=%s",
            result.processed,
            len(result.failed),
        )
        return result
