"""Domain records for the clinical store."""

from .models import (
    Patient,
    LabResultGroup,
    LabResult,
    Measurement,
    CMASScore,
    ScoreCategory,
)

__all__ = [
    "Patient",
    "LabResultGroup",
    "LabResult",
    "Measurement",
    "CMASScore",
    "ScoreCategory",
]
