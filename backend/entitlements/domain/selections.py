"""Grade and subject selection rules for tiers that scope access by selection."""

from collections.abc import Iterable

from entitlements.core.exceptions import InvalidSelectionError


def normalize_subject_ids(subject_ids: Iterable[str] | None) -> list[str]:
    """Treat the selection as a set: drop blanks and duplicates, keep first-seen order."""
    seen: dict[str, None] = {}
    for subject_id in subject_ids or []:
        value = str(subject_id).strip()
        if value:
            seen.setdefault(value, None)
    return list(seen)


def validate_selection(tier, grade_id: str | None, subject_ids: Iterable[str] | None) -> tuple[str | None, list[str]]:
    """Check a grade/subject choice against the tier's flags and bounds.

    Returns:
        The normalized ``(grade_id, subject_ids)`` pair

    Raises:
        InvalidSelectionError: The tier forbids selection or the choice is out of bounds
    """
    if not tier.can_select_grade and not tier.can_select_subjects:
        raise InvalidSelectionError("Your tier does not support grade and subject selection")

    grade_id = (grade_id or "").strip() or None
    subjects = normalize_subject_ids(subject_ids)

    if tier.can_select_grade and grade_id is None:
        raise InvalidSelectionError("A grade level must be selected")
    if not tier.can_select_grade and grade_id is not None:
        raise InvalidSelectionError("Your tier does not support grade selection")

    if tier.can_select_subjects:
        if not subjects:
            raise InvalidSelectionError("You must select at least one subject")
        if tier.max_subjects is not None and len(subjects) > tier.max_subjects:
            raise InvalidSelectionError(f"You can only select up to {tier.max_subjects} subjects")
    elif subjects:
        raise InvalidSelectionError("Your tier does not support subject selection")

    return grade_id, subjects


def selections_locked(subscription) -> bool:
    """Selections are set once per subscription and immutable afterwards."""
    return subscription.selected_grade_id is not None or bool(subscription.selected_subject_ids)
