"""Typed per-question-type configuration.

A question's settings are stored as JSON (``SurveyQuestion.config``) plus
SurveyOption rows, but everything past the boundary works with one of
three variants:

- ChoiceConfig  — MULTIPLE_CHOICE / MULTIPLE_SELECT (options, correct set)
- LikertConfig  — LIKERT_SCALE (integer range and end labels)
- TextConfig    — TEXT_SHORT / TEXT_LONG (optional length limits)

``parse_definition()`` validates authoring input and ``config_for()``
rebuilds the variant from a persisted question. Each variant's
``normalize()`` turns a raw submitted answer into its stored form or
raises AnswerFormatError.
"""

from dataclasses import dataclass, field

from coachhub.errors import InvalidQuestionConfig
from coachhub.utils import sanitize

TEXT_TYPES = ("TEXT_SHORT", "TEXT_LONG")


class AnswerFormatError(ValueError):
    """Raised by ``normalize()`` when an answer does not fit its question."""


@dataclass(frozen=True)
class OptionSpec:
    text: str
    is_correct: bool = False
    id: str = None


@dataclass(frozen=True)
class ChoiceConfig:
    multiple: bool
    options: tuple = field(default_factory=tuple)

    @property
    def option_ids(self):
        return {o.id for o in self.options}

    @property
    def correct_ids(self):
        return frozenset(o.id for o in self.options if o.is_correct)

    @property
    def is_scoreable(self):
        return bool(self.correct_ids)

    def normalize(self, raw):
        if isinstance(raw, str):
            selected = [raw]
        elif isinstance(raw, (list, tuple)):
            selected = list(raw)
        else:
            raise AnswerFormatError("Expected an option id or a list of option ids.")
        if not all(isinstance(s, str) for s in selected):
            raise AnswerFormatError("Option ids must be strings.")
        if len(set(selected)) != len(selected):
            raise AnswerFormatError("An option was selected more than once.")
        if not self.multiple and len(selected) != 1:
            raise AnswerFormatError("Select exactly one option.")
        unknown = [s for s in selected if s not in self.option_ids]
        if unknown:
            raise AnswerFormatError("Unknown option selected.")
        return selected[0] if not self.multiple else sorted(selected)

    def is_correct(self, answer):
        """Exact-set match; no partial credit."""
        if answer is None:
            return False
        selected = {answer} if isinstance(answer, str) else set(answer)
        return selected == self.correct_ids

    def to_json(self):
        # options live in survey_options rows
        return {}


@dataclass(frozen=True)
class LikertConfig:
    min_value: int = 1
    max_value: int = 5
    min_label: str = None
    max_label: str = None

    def normalize(self, raw):
        # bool is an int subclass; reject it explicitly
        if isinstance(raw, bool) or not isinstance(raw, int):
            raise AnswerFormatError("Expected a whole number.")
        if not self.min_value <= raw <= self.max_value:
            raise AnswerFormatError(
                f"Value must be between {self.min_value} and {self.max_value}."
            )
        return raw

    def to_json(self):
        return {
            "min_value": self.min_value,
            "max_value": self.max_value,
            "min_label": self.min_label,
            "max_label": self.max_label,
        }


@dataclass(frozen=True)
class TextConfig:
    min_length: int = None
    max_length: int = None

    def normalize(self, raw):
        if not isinstance(raw, str):
            raise AnswerFormatError("Expected text.")
        text = sanitize(raw)
        if self.min_length is not None and len(text) < self.min_length:
            raise AnswerFormatError(f"Must be at least {self.min_length} characters.")
        if self.max_length is not None and len(text) > self.max_length:
            raise AnswerFormatError(f"Must be at most {self.max_length} characters.")
        return text

    def to_json(self):
        return {"min_length": self.min_length, "max_length": self.max_length}


def is_blank(raw):
    """Missing answers: None, strings empty once HTML is stripped, empty lists."""
    if raw is None:
        return True
    if isinstance(raw, str):
        return not sanitize(raw)
    if isinstance(raw, (list, tuple)):
        return len(raw) == 0
    return False


# ──────────────────────────────────────────────
# Boundary parsing
# ──────────────────────────────────────────────

def _int_or_none(value, name, errors):
    if value is None or value == "":
        return None
    if isinstance(value, bool) or not isinstance(value, int):
        errors[name] = "Must be a whole number."
        return None
    return value


def parse_definition(question_type, data):
    """Validate authoring input for a question of ``question_type``.

    Args:
        data: dict; choice types read ``options`` (list of
            ``{"text", "is_correct"}``), Likert reads ``min_value``,
            ``max_value``, ``min_label``, ``max_label``, text types read
            ``min_length``/``max_length``.

    Returns:
        ChoiceConfig, LikertConfig or TextConfig. Choice options carry
        no ids yet.

    Raises:
        InvalidQuestionConfig: with per-field messages in ``details``.
    """
    errors = {}

    if question_type in ("MULTIPLE_CHOICE", "MULTIPLE_SELECT"):
        raw_options = data.get("options") or []
        options = []
        for raw in raw_options:
            if isinstance(raw, str):
                raw = {"text": raw}
            text = sanitize((raw or {}).get("text"))
            if text:
                options.append(OptionSpec(text=text, is_correct=bool(raw.get("is_correct"))))
        if len(options) < 2:
            errors["options"] = "Choice questions need at least 2 options."
        elif question_type == "MULTIPLE_CHOICE" and sum(o.is_correct for o in options) > 1:
            errors["options"] = "A multiple-choice question can have only one correct option."
        if errors:
            raise InvalidQuestionConfig("Invalid question.", details=errors)
        return ChoiceConfig(
            multiple=question_type == "MULTIPLE_SELECT", options=tuple(options)
        )

    if question_type == "LIKERT_SCALE":
        min_value = _int_or_none(data.get("min_value", 1), "min_value", errors)
        max_value = _int_or_none(data.get("max_value", 5), "max_value", errors)
        if min_value is None and "min_value" not in errors:
            min_value = 1
        if max_value is None and "max_value" not in errors:
            max_value = 5
        if not errors and max_value <= min_value:
            errors["max_value"] = "Maximum must be greater than minimum."
        if errors:
            raise InvalidQuestionConfig("Invalid question.", details=errors)
        return LikertConfig(
            min_value=min_value,
            max_value=max_value,
            min_label=sanitize(data.get("min_label")) or None,
            max_label=sanitize(data.get("max_label")) or None,
        )

    if question_type in TEXT_TYPES:
        min_length = _int_or_none(data.get("min_length"), "min_length", errors)
        max_length = _int_or_none(data.get("max_length"), "max_length", errors)
        if min_length is not None and min_length < 0:
            errors["min_length"] = "Must not be negative."
        if max_length is not None and max_length < 1:
            errors["max_length"] = "Must be at least 1."
        if (not errors and min_length is not None and max_length is not None
                and max_length < min_length):
            errors["max_length"] = "Maximum length must not be below minimum length."
        if errors:
            raise InvalidQuestionConfig("Invalid question.", details=errors)
        return TextConfig(min_length=min_length, max_length=max_length)

    raise InvalidQuestionConfig(f"Unknown question type '{question_type}'.")


def config_for(question):
    """Typed config of a persisted SurveyQuestion."""
    stored = question.config or {}
    if question.is_choice:
        return ChoiceConfig(
            multiple=question.question_type == "MULTIPLE_SELECT",
            options=tuple(
                OptionSpec(text=o.text, is_correct=bool(o.is_correct), id=o.id)
                for o in question.options
            ),
        )
    if question.question_type == "LIKERT_SCALE":
        return LikertConfig(
            min_value=stored.get("min_value", 1),
            max_value=stored.get("max_value", 5),
            min_label=stored.get("min_label"),
            max_label=stored.get("max_label"),
        )
    return TextConfig(
        min_length=stored.get("min_length"),
        max_length=stored.get("max_length"),
    )
