"""
Canonical text encoding of a single answer, one rule per question type.

Answers are stored as strings inside ``SurveyResponse.answers``. Writers go
through ``clean_answer`` (validate, then encode) and readers through
``decode_answer``. Decoding never raises: historical rows may hold text that
no longer parses, and callers treat such values as absent.
"""

from __future__ import annotations

import json
import re
from typing import Any, NamedTuple, Sequence

from django.core.exceptions import ValidationError

from .models import QuestionType
from .tree import MULTI_SELECT_DELIMITER, REQUIRED_IMAGE_COUNT

SHORT_ANSWER_MAX_LENGTH = 300
NUMERIC_RATING_RANGE = (0, 10)
LIKERT_RANGE = (1, 5)
OTHER_SEPARATOR = ": "

_INT_RE = re.compile(r"^\s*-?\d+\s*$")


class OtherChoice(NamedTuple):
    label: str
    # None when the label was chosen without free text
    other_text: str | None = None


def parse_int(text: Any) -> int | None:
    if isinstance(text, bool):
        return None
    if isinstance(text, int):
        return text
    if isinstance(text, str) and _INT_RE.match(text):
        return int(text)
    return None


class RawCodec:
    def encode(self, value: Any, options: Sequence[str] = ()) -> str:
        return "" if value is None else str(value)

    def decode(self, text: str, options: Sequence[str] = ()) -> Any:
        return text


class MultiSelectCodec:
    def encode(self, value: Any, options: Sequence[str] = ()) -> str:
        labels = [str(v) for v in value]
        for label in labels:
            if MULTI_SELECT_DELIMITER in label:
                raise ValueError(
                    f"Label '{label}' contains the '{MULTI_SELECT_DELIMITER}' delimiter."
                )
        return MULTI_SELECT_DELIMITER.join(labels)

    def decode(self, text: str, options: Sequence[str] = ()) -> list[str]:
        if not text:
            return []
        return text.split(MULTI_SELECT_DELIMITER)


class RankingCodec:
    """Label to 1-based rank, stored as a JSON object."""

    def encode(self, value: Any, options: Sequence[str] = ()) -> str:
        ranking = {}
        for label, rank in dict(value).items():
            if isinstance(rank, bool) or not isinstance(rank, int):
                raise ValueError(f"Rank for '{label}' must be an integer.")
            ranking[str(label)] = rank
        return json.dumps(ranking, ensure_ascii=False)

    def decode(self, text: str, options: Sequence[str] = ()) -> dict[str, int]:
        try:
            parsed = json.loads(text)
        except (TypeError, ValueError):
            return {}
        if not isinstance(parsed, dict):
            return {}
        if any(isinstance(r, bool) or not isinstance(r, int) for r in parsed.values()):
            return {}
        return parsed


class IntegerCodec:
    def encode(self, value: Any, options: Sequence[str] = ()) -> str:
        number = parse_int(value)
        if number is None:
            raise ValueError(f"'{value}' is not an integer.")
        return str(number)

    def decode(self, text: str, options: Sequence[str] = ()) -> int | None:
        return parse_int(text)


class ChoiceWithOtherCodec:
    """The last option is the "other" slot and may carry free text."""

    def encode(self, value: Any, options: Sequence[str] = ()) -> str:
        choice = _as_other_choice(value)
        if not choice.other_text:
            return choice.label
        if options and choice.label != options[-1]:
            raise ValueError("Free text is only allowed with the last option.")
        return f"{choice.label}{OTHER_SEPARATOR}{choice.other_text}"

    def decode(self, text: str, options: Sequence[str] = ()) -> OtherChoice:
        if options:
            prefix = f"{options[-1]}{OTHER_SEPARATOR}"
            if text.startswith(prefix):
                return OtherChoice(options[-1], text[len(prefix) :])
            return OtherChoice(text)
        label, sep, other_text = text.partition(OTHER_SEPARATOR)
        if sep:
            return OtherChoice(label, other_text)
        return OtherChoice(text)


def _as_other_choice(value: Any) -> OtherChoice:
    if isinstance(value, OtherChoice):
        return value
    if isinstance(value, dict):
        other_text = value.get("other_text")
        return OtherChoice(
            str(value.get("label") or ""),
            None if other_text is None else str(other_text),
        )
    if isinstance(value, (list, tuple)) and len(value) == 2:
        return OtherChoice(str(value[0]), None if value[1] is None else str(value[1]))
    return OtherChoice(str(value))


_raw = RawCodec()
_integer = IntegerCodec()

CODECS = {
    QuestionType.MULTIPLE_CHOICE: _raw,
    QuestionType.BRANCHING_CHOICE: _raw,
    QuestionType.SHORT_ANSWER: _raw,
    QuestionType.NUMERIC_RATING: _raw,
    QuestionType.IMAGE_BANNER: _raw,
    QuestionType.MULTIPLE_SELECT: MultiSelectCodec(),
    QuestionType.RANKING: RankingCodec(),
    QuestionType.IMAGE_CHOICE: _integer,
    QuestionType.LIKERT_SCALE: _integer,
    QuestionType.CHOICE_WITH_OTHER: ChoiceWithOtherCodec(),
}


def get_codec(question_type: str):
    return CODECS.get(question_type, _raw)


def encode_answer(question_type: str, value: Any, options: Sequence[str] = ()) -> str:
    return get_codec(question_type).encode(value, options)


def decode_answer(question_type: str, text: str, options: Sequence[str] = ()) -> Any:
    return get_codec(question_type).decode(text or "", options)


# ---------------------------------------------------------------------------
# Write-time validation
# ---------------------------------------------------------------------------


def _invalid(message: str) -> ValidationError:
    return ValidationError(message, code="invalid_answer")


def _clean_single_choice(question, value: Any) -> str:
    if not isinstance(value, str) or value not in (question.options or []):
        raise _invalid("Choose one of the listed options.")
    return value


def _clean_multi_select(question, value: Any) -> str:
    options = question.options or []
    if not isinstance(value, (list, tuple)) or not value:
        raise _invalid("Choose at least one option.")
    if len(set(value)) != len(value) or any(v not in options for v in value):
        raise _invalid("Choose distinct options from the list.")
    if question.max_selections and len(value) > question.max_selections:
        raise _invalid(f"Choose at most {question.max_selections} options.")
    return encode_answer(question.type, value, options)


def _clean_ranking(question, value: Any) -> str:
    options = question.options or []
    if not isinstance(value, dict):
        raise _invalid("A ranking must map each option to its rank.")
    expected = question.max_selections or len(options)
    if len(value) != expected or any(label not in options for label in value):
        raise _invalid(f"Rank exactly {expected} of the listed options.")
    ranks = sorted(parse_int(r) or 0 for r in value.values())
    if ranks != list(range(1, expected + 1)):
        raise _invalid(f"Ranks must run from 1 to {expected} without gaps.")
    return encode_answer(
        question.type, {label: parse_int(r) for label, r in value.items()}, options
    )


def _clean_short_answer(question, value: Any) -> str:
    if not isinstance(value, str) or not value.strip():
        raise _invalid("Enter an answer.")
    if len(value) > SHORT_ANSWER_MAX_LENGTH:
        raise _invalid(
            f"Answers are limited to {SHORT_ANSWER_MAX_LENGTH} characters."
        )
    return value


def _clean_in_range(low: int, high: int):
    def clean(question, value: Any) -> str:
        number = parse_int(value)
        if number is None or not low <= number <= high:
            raise _invalid(f"Enter a whole number from {low} to {high}.")
        return str(number)

    return clean


def _clean_image_choice(question, value: Any) -> str:
    count = len(question.image_urls or []) or REQUIRED_IMAGE_COUNT[question.type]
    index = parse_int(value)
    if index is None or not 0 <= index < count:
        raise _invalid("Choose one of the images.")
    return encode_answer(question.type, index)


def _clean_image_banner(question, value: Any) -> str:
    return "" if value is None else str(value)


def _clean_choice_with_other(question, value: Any) -> str:
    options = question.options or []
    choice = _as_other_choice(value)
    if choice.label not in options:
        raise _invalid("Choose one of the listed options.")
    if choice.other_text:
        if choice.label != options[-1]:
            raise _invalid("Free text is only accepted with the last option.")
        if len(choice.other_text) > SHORT_ANSWER_MAX_LENGTH:
            raise _invalid(
                f"Answers are limited to {SHORT_ANSWER_MAX_LENGTH} characters."
            )
    return encode_answer(question.type, choice, options)


CLEANERS = {
    QuestionType.MULTIPLE_CHOICE: _clean_single_choice,
    QuestionType.BRANCHING_CHOICE: _clean_single_choice,
    QuestionType.MULTIPLE_SELECT: _clean_multi_select,
    QuestionType.RANKING: _clean_ranking,
    QuestionType.SHORT_ANSWER: _clean_short_answer,
    QuestionType.NUMERIC_RATING: _clean_in_range(*NUMERIC_RATING_RANGE),
    QuestionType.LIKERT_SCALE: _clean_in_range(*LIKERT_RANGE),
    QuestionType.IMAGE_CHOICE: _clean_image_choice,
    QuestionType.IMAGE_BANNER: _clean_image_banner,
    QuestionType.CHOICE_WITH_OTHER: _clean_choice_with_other,
}


def clean_answer(question, value: Any) -> str:
    """Validate a structured answer for ``question`` and return its encoding."""
    cleaner = CLEANERS.get(question.type)
    if cleaner is None:
        raise _invalid(f"Unsupported question type '{question.type}'.")
    return cleaner(question, value)
