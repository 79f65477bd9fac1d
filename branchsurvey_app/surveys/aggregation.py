"""
Per-question statistics over a set of responses.

Counting and rendering are separate steps. ``tally_question`` reduces the
answers to a ``Tally`` of counters and collected texts; ``Tally`` values add,
so tallies computed over separate batches of responses can be combined with
``merge_tallies`` before ``render_summary`` turns them into the payload the
results pages use. Malformed answers are skipped, never raised on.
"""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Iterable

from django.conf import settings

from .codec import decode_answer, parse_int
from .models import QuestionType
from .tree import REQUIRED_IMAGE_COUNT

LIKERT_LABELS = (
    "Strongly disagree",
    "Disagree",
    "Neutral",
    "Agree",
    "Strongly agree",
)
NUMERIC_SCORES = range(0, 11)
LIKERT_SCORES = range(1, 6)


@dataclass
class Tally:
    answered: int = 0
    counts: Counter = field(default_factory=Counter)
    texts: list[str] = field(default_factory=list)
    orderings: list[list[str]] = field(default_factory=list)

    def __add__(self, other: Tally) -> Tally:
        return Tally(
            answered=self.answered + other.answered,
            counts=self.counts + other.counts,
            texts=self.texts + other.texts,
            orderings=self.orderings + other.orderings,
        )


def merge_tallies(tallies: Iterable[Tally]) -> Tally:
    return sum(tallies, Tally())


def _percentage(count: int, total: int) -> float:
    return round(count / total * 100, 1) if total else 0.0


def _answers_of(response: Any) -> list:
    if isinstance(response, dict):
        answers = response.get("answers")
    else:
        answers = getattr(response, "answers", None)
    return answers if isinstance(answers, list) else []


def answers_for(question_id: Any, responses: Iterable[Any]) -> list[str]:
    """Non-empty answers to one question, one per response at most."""
    key = str(question_id)
    found = []
    for response in responses:
        for entry in _answers_of(response):
            if isinstance(entry, dict) and str(entry.get("question_id")) == key:
                value = entry.get("answer")
                if value is not None and value != "":
                    found.append(str(value))
                break
    return found


# ---------------------------------------------------------------------------
# Counting
# ---------------------------------------------------------------------------


def _count_choices(question, answers: list[str], tally: Tally) -> None:
    options = question.options or []
    for text in answers:
        if question.type == QuestionType.MULTIPLE_SELECT:
            chosen = set(decode_answer(question.type, text, options))
        else:
            chosen = {text}
        for label in chosen:
            if label in options:
                tally.counts[("option", label)] += 1
                tally.counts["selections"] += 1


def _count_ranking(question, answers: list[str], tally: Tally) -> None:
    options = question.options or []
    for text in answers:
        ranking = decode_answer(question.type, text, options)
        if not ranking:
            continue
        last_rank = len(ranking)
        for label, rank in ranking.items():
            if rank == 1:
                tally.counts[("first", label)] += 1
            if rank == last_rank:
                tally.counts[("last", label)] += 1
            tally.counts[("rank_sum", label)] += rank
            tally.counts[("ranked", label)] += 1
        tally.orderings.append(sorted(ranking, key=ranking.get))


def _count_scores(question, answers: list[str], tally: Tally) -> None:
    scores = NUMERIC_SCORES if question.type == QuestionType.NUMERIC_RATING else LIKERT_SCORES
    for text in answers:
        score = parse_int(text)
        if score is None or score not in scores:
            continue
        tally.counts[("score", score)] += 1
        tally.counts["score_sum"] += score
        tally.counts["scored"] += 1


def _count_images(question, answers: list[str], tally: Tally) -> None:
    for text in answers:
        index = decode_answer(question.type, text)
        if index is not None:
            tally.counts[("image", index)] += 1


def _count_choice_with_other(question, answers: list[str], tally: Tally) -> None:
    options = question.options or []
    for text in answers:
        choice = decode_answer(question.type, text, options)
        if choice.label in options:
            tally.counts[("option", choice.label)] += 1
        if choice.other_text:
            tally.texts.append(choice.other_text)


def _collect_texts(question, answers: list[str], tally: Tally) -> None:
    tally.texts.extend(answers)


COUNTERS = {
    QuestionType.MULTIPLE_CHOICE: _count_choices,
    QuestionType.BRANCHING_CHOICE: _count_choices,
    QuestionType.MULTIPLE_SELECT: _count_choices,
    QuestionType.RANKING: _count_ranking,
    QuestionType.NUMERIC_RATING: _count_scores,
    QuestionType.LIKERT_SCALE: _count_scores,
    QuestionType.IMAGE_CHOICE: _count_images,
    QuestionType.CHOICE_WITH_OTHER: _count_choice_with_other,
    QuestionType.SHORT_ANSWER: _collect_texts,
}


def tally_question(question, responses: Iterable[Any]) -> Tally:
    answers = answers_for(question.id, responses)
    tally = Tally(answered=len(answers))
    counter = COUNTERS.get(question.type)
    if counter is not None:
        counter(question, answers, tally)
    return tally


# ---------------------------------------------------------------------------
# Rendering
# ---------------------------------------------------------------------------


def _render_choices(question, tally: Tally, text_limit) -> dict:
    summary = {
        "options": [
            {
                "label": label,
                "count": tally.counts[("option", label)],
                "percentage": _percentage(tally.counts[("option", label)], tally.answered),
            }
            for label in question.options or []
        ]
    }
    if question.type == QuestionType.MULTIPLE_SELECT:
        summary["total_selections"] = tally.counts["selections"]
    return summary


def _render_ranking(question, tally: Tally, text_limit) -> dict:
    options = []
    for label in question.options or []:
        first = tally.counts[("first", label)]
        last = tally.counts[("last", label)]
        ranked = tally.counts[("ranked", label)]
        options.append(
            {
                "label": label,
                "first_count": first,
                "first_percentage": _percentage(first, tally.answered),
                "last_count": last,
                "last_percentage": _percentage(last, tally.answered),
                "average_rank": (
                    round(tally.counts[("rank_sum", label)] / ranked, 2)
                    if ranked
                    else None
                ),
            }
        )
    return {"options": options, "orderings": list(tally.orderings)}


def _render_scores(question, tally: Tally, text_limit) -> dict:
    scored = tally.counts["scored"]
    average = round(tally.counts["score_sum"] / scored, 2) if scored else None
    if question.type == QuestionType.NUMERIC_RATING:
        return {
            "scores": [
                {
                    "score": score,
                    "count": tally.counts[("score", score)],
                    "percentage": _percentage(tally.counts[("score", score)], tally.answered),
                }
                for score in NUMERIC_SCORES
            ],
            "average_score": average,
        }

    labels = question.options or []
    return {
        "scores": [
            {
                "score": score,
                "label": (
                    labels[score - 1]
                    if len(labels) == len(LIKERT_LABELS) and labels[score - 1]
                    else LIKERT_LABELS[score - 1]
                ),
                "count": tally.counts[("score", score)],
                "percentage": _percentage(tally.counts[("score", score)], tally.answered),
            }
            for score in LIKERT_SCORES
        ],
        "average_score": average,
    }


def _render_images(question, tally: Tally, text_limit) -> dict:
    urls = question.image_urls or []
    count = len(urls) or REQUIRED_IMAGE_COUNT[QuestionType.IMAGE_CHOICE]
    return {
        "images": [
            {
                "index": index,
                "image_url": urls[index] if index < len(urls) else None,
                "count": tally.counts[("image", index)],
                "percentage": _percentage(tally.counts[("image", index)], tally.answered),
            }
            for index in range(count)
        ]
    }


def _render_choice_with_other(question, tally: Tally, text_limit) -> dict:
    summary = _render_choices(question, tally, text_limit)
    summary["other_texts"] = list(tally.texts)
    return summary


def _render_texts(question, tally: Tally, text_limit) -> dict:
    texts = tally.texts if text_limit is None else tally.texts[:text_limit]
    return {"text_responses": list(texts)}


RENDERERS = {
    QuestionType.MULTIPLE_CHOICE: _render_choices,
    QuestionType.BRANCHING_CHOICE: _render_choices,
    QuestionType.MULTIPLE_SELECT: _render_choices,
    QuestionType.RANKING: _render_ranking,
    QuestionType.NUMERIC_RATING: _render_scores,
    QuestionType.LIKERT_SCALE: _render_scores,
    QuestionType.IMAGE_CHOICE: _render_images,
    QuestionType.CHOICE_WITH_OTHER: _render_choice_with_other,
    QuestionType.SHORT_ANSWER: _render_texts,
}


def render_summary(question, tally: Tally, text_limit: int | None = None) -> dict:
    summary = {
        "question_id": question.id,
        "type": question.type,
        "text": question.text,
        "total_responses": tally.answered,
    }
    renderer = RENDERERS.get(question.type)
    if renderer is not None:
        summary.update(renderer(question, tally, text_limit))
    return summary


def summarize_question(
    question, responses: Iterable[Any], text_limit: int | None = None
) -> dict:
    return render_summary(question, tally_question(question, responses), text_limit)


def summarize_survey(questions: Iterable[Any], responses: Iterable[Any]) -> list[dict]:
    """Summaries for every question, in the order given."""
    responses = list(responses)
    text_limit = getattr(settings, "BRANCHSURVEY_TEXT_ANSWER_LIMIT", None)
    return [summarize_question(q, responses, text_limit) for q in questions]
