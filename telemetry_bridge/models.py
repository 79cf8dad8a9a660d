"""In-memory shapes produced by the payload decoder."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum


@dataclass(slots=True, frozen=True)
class Record:
    """One normalized sensor observation, in table column order."""

    timestamp: datetime
    temperature: float
    humidity: float
    light: float
    device_id: str

    def as_row(self) -> tuple[datetime, float, float, float, str]:
        return (self.timestamp, self.temperature, self.humidity, self.light, self.device_id)


class DecodeFailureReason(str, Enum):
    MALFORMED = "malformed"
    MISSING_DEVICE_ID = "missing_device_id"


@dataclass(slots=True, frozen=True)
class DecodeFailure:
    reason: DecodeFailureReason
    detail: str = ""

    def __str__(self) -> str:
        if self.detail:
            return f"{self.reason.value}: {self.detail}"
        return self.reason.value
