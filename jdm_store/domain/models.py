"""
Domain models for the JDM clinical store.

Pure data classes + value objects. No I/O, no side effects.
Every record validates itself on construction and raises ValueError.
"""
import math
import numbers
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional, Tuple, List

import numpy as np

CMAS_MIN_SCORE = 0.0
CMAS_MAX_SCORE = 52.0
CMAS_HIGH_THRESHOLD = 10.0


class ScoreCategory(Enum):
    """Two-valued CMAS tag derived from the score."""
    HIGH = "CMAS Score > 10"
    LOW = "CMAS Score 4-9"

    @classmethod
    def for_score(cls, score: float) -> "ScoreCategory":
        """Strictly above the threshold is HIGH; the threshold itself is LOW."""
        return cls.HIGH if score > CMAS_HIGH_THRESHOLD else cls.LOW


def _required_text(value, label: str) -> str:
    if value is None or not str(value).strip():
        raise ValueError(f"{label} cannot be empty")
    return str(value).strip()


def _optional_text(value) -> Optional[str]:
    """Empty string is treated as absent."""
    if value is None:
        return None
    text = str(value).strip()
    return text or None


@dataclass(frozen=True)
class Patient:
    """Root entity - immutable."""
    patient_id: str
    name: str

    def __post_init__(self):
        object.__setattr__(self, "patient_id", _required_text(self.patient_id, "Patient ID"))
        object.__setattr__(self, "name", _required_text(self.name, "Patient name"))


@dataclass(frozen=True)
class LabResultGroup:
    """Lab panel grouping result definitions - immutable."""
    group_id: str
    group_name: str

    def __post_init__(self):
        object.__setattr__(self, "group_id", _required_text(self.group_id, "Group ID"))
        object.__setattr__(self, "group_name", _required_text(self.group_name, "Group name"))


@dataclass(frozen=True)
class Measurement:
    """Single timestamped value of a lab result. The value is kept as text."""
    measurement_id: str
    result_id: str
    date_time: datetime
    value: str

    def __post_init__(self):
        object.__setattr__(self, "measurement_id", _required_text(self.measurement_id, "Measurement ID"))
        object.__setattr__(self, "result_id", _required_text(self.result_id, "Result ID"))
        if not isinstance(self.date_time, datetime):
            raise ValueError("Measurement date_time is required")
        if self.value is None:
            raise ValueError("Measurement value cannot be None")
        object.__setattr__(self, "value", str(self.value).strip())

    @property
    def numeric_value(self) -> Optional[float]:
        """Float interpretation of the value, None when it is not a number."""
        try:
            number = float(self.value)
        except ValueError:
            return None
        return number if math.isfinite(number) else None

    @property
    def is_numeric(self) -> bool:
        return self.numeric_value is not None

    def value_with_unit(self, unit: Optional[str]) -> str:
        if unit and unit.strip():
            return f"{self.value} {unit.strip()}"
        return self.value


@dataclass(frozen=True)
class LabResult:
    """
    Result definition (e.g. "Weight" in panel "Vitals").

    Group and patient references are optional; an empty reference is stored
    as None. ``measurements`` is filled in by read queries only.
    """
    result_id: str
    result_name: str
    group_id: Optional[str] = None
    patient_id: Optional[str] = None
    unit: str = ""
    result_name_english: str = ""
    measurements: Tuple[Measurement, ...] = ()

    def __post_init__(self):
        object.__setattr__(self, "result_id", _required_text(self.result_id, "Result ID"))
        object.__setattr__(self, "result_name", _required_text(self.result_name, "Result name"))
        object.__setattr__(self, "group_id", _optional_text(self.group_id))
        object.__setattr__(self, "patient_id", _optional_text(self.patient_id))
        object.__setattr__(self, "unit", (self.unit or "").strip())
        object.__setattr__(self, "result_name_english", (self.result_name_english or "").strip())
        object.__setattr__(self, "measurements", tuple(self.measurements or ()))

    @property
    def display_name(self) -> str:
        return self.result_name_english or self.result_name

    @property
    def measurement_count(self) -> int:
        return len(self.measurements)

    @property
    def most_recent_measurement(self) -> Optional[Measurement]:
        if not self.measurements:
            return None
        return max(self.measurements, key=lambda m: m.date_time)

    def numeric_values(self) -> List[float]:
        return [m.numeric_value for m in self.measurements if m.numeric_value is not None]

    @property
    def average_value(self) -> float:
        """Mean of the numeric measurements; NaN when there are none."""
        values = self.numeric_values()
        if not values:
            return float("nan")
        return float(np.mean(np.asarray(values, dtype=float)))


@dataclass(frozen=True)
class CMASScore:
    """
    Childhood Myositis Assessment Scale score - immutable.

    ``category`` is derived from ``score`` and cannot be passed in.
    ``id`` is assigned by the store on insert.
    """
    patient_id: str
    date: datetime
    score: float
    id: Optional[int] = None
    category: ScoreCategory = field(init=False)

    def __post_init__(self):
        object.__setattr__(self, "patient_id", _required_text(self.patient_id, "Patient ID"))
        if not isinstance(self.date, datetime):
            raise ValueError("CMAS score date is required")
        if isinstance(self.score, bool) or not isinstance(self.score, numbers.Real):
            raise ValueError(f"CMAS score must be a number, got {self.score!r}")
        score = float(self.score)
        if math.isnan(score) or score < CMAS_MIN_SCORE or score > CMAS_MAX_SCORE:
            raise ValueError(f"CMAS score must be between {CMAS_MIN_SCORE:g} and {CMAS_MAX_SCORE:g}, got {score}")
        object.__setattr__(self, "score", score)
        object.__setattr__(self, "category", ScoreCategory.for_score(score))

    @property
    def is_high_score(self) -> bool:
        return self.category is ScoreCategory.HIGH
