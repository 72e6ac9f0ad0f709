"""
Domain model validation and derived properties.

Tests:
1. CMAS score category threshold and range
2. Required identifiers
3. Optional references normalised to None
4. Measurement numeric interpretation
5. LabResult aggregates
"""

import math
from datetime import datetime

import pytest

from jdm_store.domain.models import (
    Patient,
    LabResultGroup,
    LabResult,
    Measurement,
    CMASScore,
    ScoreCategory,
)

WHEN = datetime(2024, 3, 1, 9, 30)


# ============================================================
# Test 1: CMAS categories
# ============================================================

def test_score_of_ten_is_low():
    score = CMASScore("P1", WHEN, 10.0)
    assert score.category is ScoreCategory.LOW
    assert score.category.value == "CMAS Score 4-9"
    assert not score.is_high_score


def test_score_just_above_ten_is_high():
    score = CMASScore("P1", WHEN, 10.0001)
    assert score.category is ScoreCategory.HIGH
    assert score.category.value == "CMAS Score > 10"
    assert score.is_high_score


@pytest.mark.parametrize("value", [0, 52, 25.5])
def test_score_range_bounds_accepted(value):
    assert CMASScore("P1", WHEN, value).score == float(value)


@pytest.mark.parametrize("value", [-1, 53, float("nan")])
def test_score_out_of_range_rejected(value):
    with pytest.raises(ValueError):
        CMASScore("P1", WHEN, value)


def test_score_rejects_non_numbers():
    with pytest.raises(ValueError):
        CMASScore("P1", WHEN, "15")
    with pytest.raises(ValueError):
        CMASScore("P1", WHEN, True)


def test_score_category_cannot_be_passed_in():
    with pytest.raises(TypeError):
        CMASScore("P1", WHEN, 5, category=ScoreCategory.HIGH)


# ============================================================
# Test 2: Required identifiers
# ============================================================

@pytest.mark.parametrize("factory", [
    lambda: Patient("", "Alice"),
    lambda: Patient("P1", "   "),
    lambda: LabResultGroup("G1", ""),
    lambda: LabResult("", "Weight"),
    lambda: LabResult("R1", ""),
    lambda: Measurement("M1", "", WHEN, "1"),
    lambda: Measurement("M1", "R1", None, "1"),
    lambda: Measurement("M1", "R1", WHEN, None),
    lambda: CMASScore(None, WHEN, 5),
    lambda: CMASScore("P1", None, 5),
])
def test_missing_required_fields_rejected(factory):
    with pytest.raises(ValueError):
        factory()


def test_identifiers_are_stripped():
    patient = Patient("  P1 ", " Alice ")
    assert patient.patient_id == "P1"
    assert patient.name == "Alice"


# ============================================================
# Test 3: Optional references
# ============================================================

def test_empty_references_become_none():
    result = LabResult("R1", "Weight", group_id="", patient_id="  ")
    assert result.group_id is None
    assert result.patient_id is None


def test_display_name_prefers_english():
    assert LabResult("R1", "Gewicht", result_name_english="Weight").display_name == "Weight"
    assert LabResult("R1", "Gewicht").display_name == "Gewicht"


# ============================================================
# Test 4: Measurement values
# ============================================================

def test_numeric_measurement():
    m = Measurement("M1", "R1", WHEN, "42.5")
    assert m.is_numeric
    assert m.numeric_value == 42.5
    assert m.value_with_unit("kg") == "42.5 kg"


def test_non_numeric_measurement():
    m = Measurement("M1", "R1", WHEN, "positive")
    assert not m.is_numeric
    assert m.numeric_value is None
    assert m.value_with_unit("") == "positive"


# ============================================================
# Test 5: LabResult aggregates
# ============================================================

def test_lab_result_aggregates():
    measurements = (
        Measurement("M1", "R1", datetime(2024, 1, 1), "40"),
        Measurement("M2", "R1", datetime(2024, 3, 1), "44"),
        Measurement("M3", "R1", datetime(2024, 2, 1), "n/a"),
    )
    result = LabResult("R1", "Weight", measurements=measurements)

    assert result.measurement_count == 3
    assert result.most_recent_measurement.measurement_id == "M2"
    assert result.numeric_values() == [40.0, 44.0]
    assert result.average_value == pytest.approx(42.0)


def test_lab_result_without_numeric_values():
    result = LabResult("R1", "Weight")
    assert result.most_recent_measurement is None
    assert math.isnan(result.average_value)
