"""
Respondent navigation over a survey's flat question list.

The engine is stateless: every call receives the full ``questions`` list
(``SurveyQuestion`` rows or ``FlatQuestion`` records) and works out where the
respondent is from their answers alone. Question ids are compared as strings
because answer histories come back from JSON.

Transition from question ``q`` answered with ``a``:

1. If ``q`` is a branching question, ``a`` is one of its options and that
   option has follow-ups, go to the first follow-up.
2. If the option has no follow-ups and its end policy is ``end_survey``, the
   survey is complete.
3. Otherwise move to ``q``'s next sibling. Past the last sibling, return to
   the parent branching question: an ``end_survey`` policy on the option that
   led here completes the survey, anything else continues after the parent.
   Running off the end of the top level completes the survey.

Nothing here raises. Unknown question ids and cyclic data resolve to
``SURVEY_COMPLETE`` and are logged.
"""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
import logging
from typing import Any, Iterable, Sequence

from .models import BranchEndPolicy, QuestionType

logger = logging.getLogger(__name__)


class SurveyComplete:
    is_complete = True

    def __repr__(self) -> str:
        return "SURVEY_COMPLETE"


SURVEY_COMPLETE = SurveyComplete()


@dataclass(frozen=True)
class AtQuestion:
    question: Any
    is_complete = False

    @property
    def question_id(self) -> Any:
        return self.question.id


def _key(question_id: Any) -> str | None:
    return None if question_id is None else str(question_id)


class _QuestionIndex:
    def __init__(self, questions: Iterable[Any]):
        self.by_id: dict[str, Any] = {}
        groups: dict[tuple[str | None, str], list[Any]] = defaultdict(list)
        for question in questions:
            self.by_id[_key(question.id)] = question
            parent = _key(question.parent_question_id)
            groups[(parent, question.parent_branch_option or "")].append(question)
        # Stable sort keeps input order for equal ``order`` values
        self.siblings = {
            group: sorted(members, key=lambda q: q.order or 0)
            for group, members in groups.items()
        }

    def get(self, question_id: Any) -> Any:
        return self.by_id.get(_key(question_id))

    def roots(self) -> list[Any]:
        return self.siblings.get((None, ""), [])

    def follow_ups(self, question: Any, option: str) -> list[Any]:
        return self.siblings.get((_key(question.id), option), [])

    def advance(self, question: Any, answer: Any):
        if question.type == QuestionType.BRANCHING_CHOICE and answer in (
            question.options or []
        ):
            follow_ups = self.follow_ups(question, answer)
            if follow_ups:
                return AtQuestion(follow_ups[0])
            if _policy(question, answer) == BranchEndPolicy.END_SURVEY:
                return SURVEY_COMPLETE
        return self.after(question)

    def after(self, question: Any):
        """State after ``question`` and its whole subtree have been passed."""
        visited: set[str | None] = set()
        node = question
        while True:
            key = _key(node.id)
            if key in visited:
                logger.warning("Cycle detected in question data at %s", node.id)
                return SURVEY_COMPLETE
            visited.add(key)

            group = (_key(node.parent_question_id), node.parent_branch_option or "")
            siblings = self.siblings.get(group, [])
            position = next(
                (i for i, q in enumerate(siblings) if _key(q.id) == key), None
            )
            if position is not None and position + 1 < len(siblings):
                return AtQuestion(siblings[position + 1])

            if node.parent_question_id is None:
                return SURVEY_COMPLETE
            parent = self.get(node.parent_question_id)
            if parent is None:
                logger.warning(
                    "Question %s refers to missing parent %s",
                    node.id,
                    node.parent_question_id,
                )
                return SURVEY_COMPLETE
            if _policy(parent, node.parent_branch_option) == BranchEndPolicy.END_SURVEY:
                return SURVEY_COMPLETE
            node = parent


def _policy(question: Any, option: str) -> str:
    return (question.branch_end_policy or {}).get(option, BranchEndPolicy.CONTINUE)


def first_state(questions: Iterable[Any]):
    roots = _QuestionIndex(questions).roots()
    return AtQuestion(roots[0]) if roots else SURVEY_COMPLETE


def next_state(questions: Iterable[Any], question_id: Any, answer: Any):
    index = _QuestionIndex(questions)
    question = index.get(question_id)
    if question is None:
        logger.warning("Navigation asked to advance from unknown question %s", question_id)
        return SURVEY_COMPLETE
    return index.advance(question, answer)


def current_state(questions: Iterable[Any], history: Sequence[dict]):
    """State implied by the most recent entry of an answer history."""
    if not history:
        return first_state(questions)
    last = history[-1]
    return next_state(questions, last.get("question_id"), last.get("answer"))


def expected_question_ids(questions: Iterable[Any], history: Sequence[dict]) -> list[str]:
    """Replay ``history`` from the first question.

    Returns the ids (as strings) of the questions the respondent has been
    shown along the replayed path, ending with the question currently
    awaiting an answer, if any. Replay stops at the first history entry that
    does not match the question the path expects.
    """
    index = _QuestionIndex(questions)
    roots = index.roots()
    state = AtQuestion(roots[0]) if roots else SURVEY_COMPLETE
    path: list[str] = []
    for entry in history or []:
        if state.is_complete or _key(state.question_id) != _key(entry.get("question_id")):
            break
        path.append(_key(state.question_id))
        state = index.advance(state.question, entry.get("answer"))
    if not state.is_complete and _key(state.question_id) not in path:
        path.append(_key(state.question_id))
    return path
