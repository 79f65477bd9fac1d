"""
Operations that combine the pure survey modules with the database.

Authoring: ``save_survey_tree`` / ``load_survey_tree``.
Intake: ``record_answer``, ``complete_response`` and ``abandon_response`` run
intake-time validation (answer shape, question sequence) and then hand the
write to the completion guard.
Results: ``survey_statistics``.
"""

from __future__ import annotations

import logging
from typing import Any, Iterable

from django.core.exceptions import ValidationError
from django.db import transaction

from .aggregation import summarize_survey
from .codec import clean_answer
from .converter import flatten, hydrate
from .guard import GuardResult, check_response, submit_update
from .models import Survey, SurveyQuestion, SurveyResponse
from .navigation import current_state, expected_question_ids
from .tree import MalformedTreeError, QuestionNode, validate_tree

logger = logging.getLogger(__name__)


def save_survey_tree(survey: Survey, roots: Iterable[QuestionNode]) -> list[SurveyQuestion]:
    """Replace the survey's questions with ``roots``.

    Node ids are rewritten in place to the persisted primary keys.
    """
    roots = list(roots)
    validate_tree(roots)
    records = flatten(roots, survey.pk)
    nodes = {node.id: node for root in roots for node in root.walk()}
    if len(nodes) != len(records):
        raise MalformedTreeError("Question ids must be unique within a survey.")

    if survey.responses.exists():
        raise ValidationError(
            "This survey already has responses; its questions can no longer change.",
            code="SURVEY_HAS_RESPONSES",
        )

    saved: list[SurveyQuestion] = []
    persisted_ids: dict[Any, int] = {}
    with transaction.atomic():
        survey.questions.all().delete()
        for record in records:
            row = SurveyQuestion.objects.create(
                survey=survey,
                text=record.text,
                type=record.type,
                options=record.options,
                order=record.order,
                parent_question_id=(
                    persisted_ids[record.parent_question_id]
                    if record.parent_question_id is not None
                    else None
                ),
                parent_branch_option=record.parent_branch_option,
                branch_end_policy=record.branch_end_policy,
                max_selections=record.max_selections,
                image_urls=record.image_urls,
            )
            persisted_ids[record.id] = row.pk
            saved.append(row)

    for local_id, pk in persisted_ids.items():
        nodes[local_id].id = pk
    logger.info("Saved %d questions for survey %s", len(saved), survey.pk)
    return saved


def load_survey_tree(survey: Survey) -> list[QuestionNode]:
    return hydrate(survey.questions.order_by("order", "id"))


def _survey_questions(response: SurveyResponse) -> list[SurveyQuestion]:
    return list(response.survey.questions.order_by("order", "id"))


def _require_on_path(questions: list[SurveyQuestion], question_id: Any):
    def validate(response: SurveyResponse) -> None:
        if str(question_id) not in expected_question_ids(questions, response.answers):
            raise ValidationError(
                "This question is not part of the respondent's path.",
                code="OUT_OF_SEQUENCE",
            )

    return validate


def _require_finished(questions: list[SurveyQuestion]):
    def validate(response: SurveyResponse) -> None:
        if not current_state(questions, response.answers).is_complete:
            raise ValidationError(
                "The survey still has questions to answer.", code="SURVEY_NOT_FINISHED"
            )

    return validate


def record_answer(
    response_id: Any, session_id: str | None, question_id: Any, value: Any, now=None
):
    """Validate and store one answer.

    Returns ``(GuardResult, next_state)``; ``next_state`` is ``None`` when the
    guard refused the write. Raises ``ValidationError`` for answers that do not
    fit the question or arrive out of sequence. The sequence check is repeated
    against the locked row, so an answer is refused when a concurrent change
    of branch has taken its question off the path.
    """
    precheck = check_response(response_id, session_id, now)
    if not precheck.ok:
        return precheck, None

    questions = _survey_questions(precheck.response)
    question = next((q for q in questions if str(q.id) == str(question_id)), None)
    if question is None:
        raise ValidationError(
            "This question is not part of the respondent's path.",
            code="OUT_OF_SEQUENCE",
        )
    on_path = _require_on_path(questions, question.id)
    on_path(precheck.response)

    encoded = clean_answer(question, value)
    result = submit_update(
        response_id,
        session_id,
        {"answers": [{"question_id": question.id, "answer": encoded}]},
        now=now,
        validate=on_path,
    )
    if not result.ok:
        return result, None
    return result, current_state(questions, result.response.answers)


def complete_response(response_id: Any, session_id: str | None, now=None) -> GuardResult:
    precheck = check_response(response_id, session_id, now)
    if not precheck.ok:
        return precheck

    finished = _require_finished(_survey_questions(precheck.response))
    finished(precheck.response)
    return submit_update(
        response_id,
        session_id,
        {"status": SurveyResponse.Status.COMPLETED},
        now=now,
        validate=finished,
    )


def abandon_response(response_id: Any, session_id: str | None, now=None) -> GuardResult:
    return submit_update(
        response_id, session_id, {"status": SurveyResponse.Status.ABANDONED}, now=now
    )


def survey_statistics(survey: Survey) -> list[dict]:
    """Per-question summaries over the survey's completed responses."""
    questions = survey.questions.order_by("order", "id")
    responses = survey.responses.filter(status=SurveyResponse.Status.COMPLETED).only(
        "answers"
    )
    return summarize_survey(questions, responses)
