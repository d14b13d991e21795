"""Tests for grade/subject selection validation."""

from types import SimpleNamespace

import pytest

from entitlements.core.exceptions import InvalidSelectionError
from entitlements.domain.selections import normalize_subject_ids, selections_locked, validate_selection

pytestmark = pytest.mark.unit


def make_tier(**overrides):
    fields = {"can_select_grade": True, "can_select_subjects": True, "max_subjects": 2}
    fields.update(overrides)
    return SimpleNamespace(**fields)


def test_normalize_subject_ids_dedupes_and_drops_blanks():
    assert normalize_subject_ids(["math", " ", "physics", "math", ""]) == ["math", "physics"]
    assert normalize_subject_ids(None) == []


def test_valid_selection_is_normalized():
    grade, subjects = validate_selection(make_tier(), " grade-10 ", ["math", "math", "physics"])
    assert grade == "grade-10"
    assert subjects == ["math", "physics"]


def test_tier_without_selection_rejects():
    tier = make_tier(can_select_grade=False, can_select_subjects=False)
    with pytest.raises(InvalidSelectionError, match="does not support"):
        validate_selection(tier, "grade-10", ["math"])


def test_grade_required_when_tier_selects_grade():
    with pytest.raises(InvalidSelectionError, match="grade level"):
        validate_selection(make_tier(), None, ["math"])


def test_zero_subjects_rejected():
    with pytest.raises(InvalidSelectionError, match="at least one subject"):
        validate_selection(make_tier(), "grade-10", [])


def test_too_many_subjects_rejected():
    with pytest.raises(InvalidSelectionError, match="up to 2 subjects"):
        validate_selection(make_tier(), "grade-10", ["math", "physics", "chemistry"])


def test_duplicates_do_not_count_toward_max_subjects():
    _, subjects = validate_selection(make_tier(max_subjects=1), "grade-10", ["math", "math"])
    assert subjects == ["math"]


def test_unbounded_subjects_when_max_is_none():
    _, subjects = validate_selection(make_tier(max_subjects=None), "grade-10", [f"s{i}" for i in range(20)])
    assert len(subjects) == 20


def test_error_code_is_stable():
    with pytest.raises(InvalidSelectionError) as excinfo:
        validate_selection(make_tier(), "grade-10", [])
    assert excinfo.value.code == "invalid_selection"


def test_selections_locked_once_set():
    assert selections_locked(SimpleNamespace(selected_grade_id=None, selected_subject_ids=[])) is False
    assert selections_locked(SimpleNamespace(selected_grade_id="grade-10", selected_subject_ids=[])) is True
    assert selections_locked(SimpleNamespace(selected_grade_id=None, selected_subject_ids=["math"])) is True
