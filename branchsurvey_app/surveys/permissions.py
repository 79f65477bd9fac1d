from __future__ import annotations

from .models import Survey


def can_view_survey(user, survey: Survey) -> bool:
    if not user.is_authenticated:
        return False
    if user.is_superuser:
        return True
    return survey.owner_id == getattr(user, "id", None)


def can_edit_survey(user, survey: Survey) -> bool:
    # Closed surveys stay readable but their questions are frozen
    if not can_view_survey(user, survey):
        return False
    return survey.status != Survey.Status.CLOSED

