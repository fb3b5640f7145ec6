"""
ATH event types.
"""

import hashlib
from dataclasses import dataclass
from datetime import datetime
from enum import Enum


class ATHKind(Enum):
    """How a new all-time high was detected."""

    FIRST_OBSERVATION = "first_observation"
    REAL_TIME = "real_time"  # current price crossed the stored ATH
    MISSED = "missed"  # feed reports a higher historical ATH than stored


def percentage_increase(new_ath: float, previous_ath: float) -> float:
    """Percent rise from previous to new ATH; 0 when there is no previous ATH."""
    if previous_ath == 0:
        return 0.0
    return ((new_ath - previous_ath) / previous_ath) * 100


@dataclass(frozen=True)
class ATHEvent:
    """A detected all-time-high crossing."""

    asset_id: str
    symbol: str
    name: str
    previous_ath: float
    new_ath: float
    kind: ATHKind
    detected_at: datetime
    ath_date: datetime

    @property
    def event_id(self) -> str:
        """Stable identity of the crossing, shared by re-detections of it."""
        digest = hashlib.sha256(f"{self.asset_id}:{self.new_ath!r}".encode())
        return digest.hexdigest()[:24]

    @property
    def percentage_increase(self) -> float:
        return percentage_increase(self.new_ath, self.previous_ath)
