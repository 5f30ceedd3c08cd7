"""Error taxonomy for the scheduling core."""

from datetime import datetime
from typing import Optional


class SchedulingError(Exception):
    """Base exception for scheduling errors."""

    pass


class ValidationError(SchedulingError):
    """Malformed input, rejected before any store access."""

    pass


class NotFoundError(SchedulingError):
    """Referenced appointment, patient or doctor does not exist."""

    pass


class ConflictError(SchedulingError):
    """The requested slot overlaps an existing booking for the same doctor."""

    def __init__(
        self,
        doctor_id: str,
        start: datetime,
        end: datetime,
        message: Optional[str] = None,
    ):
        self.doctor_id = doctor_id
        self.start = start
        self.end = end
        super().__init__(
            message
            or f"Time slot {start.isoformat()} - {end.isoformat()} is already booked for doctor {doctor_id}"
        )


class StoreError(SchedulingError):
    """Transient store failure; the whole atomic operation may be retried."""

    pass
