"""
Completion guard for survey responses.

Every write to a ``SurveyResponse`` after it is started goes through
``submit_update``. The row is classified first (missing, wrong session,
completed, expired) and then written with one conditional UPDATE that only
matches while the row is still ``in_progress`` at the version that was read.
If that UPDATE matches nothing another writer got there first; the row is
re-read and classified again, so a completed response is never overwritten
and two concurrent completions cannot both succeed.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
import logging
import secrets
from typing import Any, Callable

from django.conf import settings
from django.db import models, transaction
from django.db.models import F
from django.utils import timezone

from .models import Survey, SurveyResponse

logger = logging.getLogger(__name__)

MAX_WRITE_ATTEMPTS = 3

PATCHABLE_STATUSES = {
    SurveyResponse.Status.IN_PROGRESS,
    SurveyResponse.Status.COMPLETED,
    SurveyResponse.Status.ABANDONED,
}


class GuardError(models.TextChoices):
    RESPONSE_NOT_FOUND = "RESPONSE_NOT_FOUND", "Response not found"
    SESSION_MISMATCH = "SESSION_MISMATCH", "Session does not own this response"
    ALREADY_COMPLETED = "ALREADY_COMPLETED", "Response has already been completed"
    RESPONSE_EXPIRED = "RESPONSE_EXPIRED", "Response is no longer open"


@dataclass(frozen=True)
class GuardResult:
    response: SurveyResponse | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


class ResponseConflictError(Exception):
    """Raised when a write keeps losing to concurrent writers."""


def response_is_expired(response: SurveyResponse, now) -> bool:
    ttl = getattr(settings, "BRANCHSURVEY_RESPONSE_TTL_MINUTES", None)
    if not ttl:
        return False
    return response.last_activity + timedelta(minutes=ttl) < now


def classify(
    response: SurveyResponse | None,
    session_id: str | None,
    now,
    is_expired: Callable[[SurveyResponse, Any], bool] = response_is_expired,
) -> str | None:
    """Return the ``GuardError`` that blocks a write, or ``None``."""
    if response is None:
        return GuardError.RESPONSE_NOT_FOUND
    if not secrets.compare_digest(str(response.session_id), str(session_id or "")):
        return GuardError.SESSION_MISMATCH
    if response.status == SurveyResponse.Status.COMPLETED:
        return GuardError.ALREADY_COMPLETED
    if response.status != SurveyResponse.Status.IN_PROGRESS:
        return GuardError.RESPONSE_EXPIRED
    if is_expired(response, now):
        return GuardError.RESPONSE_EXPIRED
    return None


def merge_answers(existing: list, incoming: list) -> list:
    """Merge answer entries by ``question_id``.

    New questions are appended. Answering a question already in the history
    replaces its entry and drops every entry after it, since a changed
    answer may lead down a different branch.
    """
    merged = [dict(entry) for entry in existing or []]
    for entry in incoming:
        key = str(entry["question_id"])
        position = next(
            (i for i, e in enumerate(merged) if str(e.get("question_id")) == key),
            None,
        )
        if position is None:
            merged.append(dict(entry))
        else:
            merged[position] = dict(entry)
            del merged[position + 1 :]
    return merged


def _validate_patch(patch: dict) -> None:
    unknown = set(patch) - {"answers", "status"}
    if unknown:
        raise ValueError(f"Unsupported patch fields: {', '.join(sorted(unknown))}")
    status = patch.get("status")
    if status is not None and status not in PATCHABLE_STATUSES:
        raise ValueError(f"Status '{status}' cannot be set on a response.")
    for entry in patch.get("answers") or []:
        if not isinstance(entry, dict) or "question_id" not in entry:
            raise ValueError("Each answer needs a question_id.")
        if not isinstance(entry.get("answer"), str):
            raise ValueError("Answers must be encoded text.")


def _load_for_update(response_id: Any) -> SurveyResponse | None:
    return SurveyResponse.objects.select_for_update().filter(pk=response_id).first()


def _changes_for(response: SurveyResponse, patch: dict, now) -> dict:
    changes: dict[str, Any] = {"last_activity": now}
    if patch.get("answers"):
        changes["answers"] = merge_answers(response.answers, patch["answers"])
    status = patch.get("status")
    if status:
        changes["status"] = status
        if status == SurveyResponse.Status.COMPLETED:
            changes["completed_at"] = now
    return changes


def _conditional_update(response: SurveyResponse, **changes) -> int:
    return SurveyResponse.objects.filter(
        pk=response.pk,
        session_id=response.session_id,
        status=SurveyResponse.Status.IN_PROGRESS,
        version=response.version,
    ).update(version=F("version") + 1, **changes)


def check_response(
    response_id: Any,
    session_id: str | None,
    now=None,
    is_expired: Callable[[SurveyResponse, Any], bool] = response_is_expired,
) -> GuardResult:
    """Read-only classification, for callers that validate before writing."""
    now = now or timezone.now()
    response = SurveyResponse.objects.filter(pk=response_id).first()
    error = classify(response, session_id, now, is_expired)
    if error:
        return GuardResult(error=error)
    return GuardResult(response=response)


def submit_update(
    response_id: Any,
    session_id: str | None,
    patch: dict | None = None,
    now=None,
    is_expired: Callable[[SurveyResponse, Any], bool] = response_is_expired,
    validate: Callable[[SurveyResponse], None] | None = None,
) -> GuardResult:
    """Apply ``patch`` to a response if, and only if, it is still writable.

    ``validate`` is called with the locked row just before the write and may
    raise to refuse a patch that no longer fits the stored state.
    """
    patch = patch or {}
    _validate_patch(patch)
    now = now or timezone.now()

    for attempt in range(1, MAX_WRITE_ATTEMPTS + 1):
        with transaction.atomic():
            response = _load_for_update(response_id)
            error = classify(response, session_id, now, is_expired)
            if (
                error == GuardError.RESPONSE_EXPIRED
                and response.status == SurveyResponse.Status.IN_PROGRESS
            ):
                if _conditional_update(response, status=SurveyResponse.Status.EXPIRED):
                    logger.info("Response %s expired after inactivity", response.pk)
            if error:
                logger.info("Rejected update to response %s: %s", response_id, error)
                return GuardResult(error=error)
            if validate is not None:
                validate(response)

            written = _conditional_update(response, **_changes_for(response, patch, now))

        if written:
            response.refresh_from_db()
            if response.status == SurveyResponse.Status.COMPLETED:
                logger.info("Response %s completed", response.pk)
            return GuardResult(response=response)

        logger.info(
            "Concurrent write on response %s (attempt %d), re-reading",
            response_id,
            attempt,
        )

    raise ResponseConflictError(
        f"Response {response_id} changed {MAX_WRITE_ATTEMPTS} times during update."
    )


def start_response(survey: Survey, now=None) -> SurveyResponse:
    """Open a new in-progress response with a fresh session token."""
    now = now or timezone.now()
    response = SurveyResponse.objects.create(
        survey=survey,
        session_id=secrets.token_urlsafe(32),
        status=SurveyResponse.Status.IN_PROGRESS,
        last_activity=now,
    )
    logger.info("Started response %s for survey %s", response.pk, survey.pk)
    return response
