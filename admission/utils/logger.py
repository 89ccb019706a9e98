"""Structured logging utilities."""

from __future__ import annotations

import logging
import sys
from typing import Any, MutableMapping, Optional

from admission.utils.config import get_settings


_LOGGER_INITIALIZED = False


def configure_logging(level: Optional[str] = None) -> None:
    """Configure process-wide logging once.

    Every module logs through the same stdout handler so transition and
    ledger records share one format regardless of which layer emitted them.
    """

    global _LOGGER_INITIALIZED
    if _LOGGER_INITIALIZED:
        return

    settings = get_settings()
    resolved_level = (level or settings.log_level).upper()

    logging.basicConfig(
        level=resolved_level,
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
        stream=sys.stdout,
    )
    _LOGGER_INITIALIZED = True


def get_logger(name: str) -> logging.Logger:
    """Return a configured logger for the requested module."""
    configure_logging()
    return logging.getLogger(name)


class BookingLogAdapter(logging.LoggerAdapter):
    """Prefix records with the booking request and accommodation they concern."""

    def process(
        self,
        msg: Any,
        kwargs: MutableMapping[str, Any],
    ) -> tuple[Any, MutableMapping[str, Any]]:
        extra = self.extra or {}
        request_id = extra.get("request_id", "-")
        accommodation_id = extra.get("accommodation_id", "-")
        return f"[request={request_id} accommodation={accommodation_id}] {msg}", kwargs


def booking_logger(
    logger: logging.Logger,
    request_id: int | None,
    accommodation_id: int | None,
) -> BookingLogAdapter:
    return BookingLogAdapter(
        logger,
        {"request_id": request_id, "accommodation_id": accommodation_id},
    )
