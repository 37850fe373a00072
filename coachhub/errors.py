"""Expected, caller-recoverable failures of the onboarding engines.

Engine operations do not raise these to their callers. They are raised
inside a unit of work (see services/unit_of_work.py), which rolls the
transaction back and hands the error instance back as the second item
of a ``(value, error)`` tuple. Blueprints turn them into JSON responses
via ``to_dict()`` and ``http_status``.
"""

from flask import jsonify


class OnboardingError(Exception):
    """Base class. ``code`` is the stable machine-readable error kind."""

    code = "onboarding_error"
    http_status = 400

    def __init__(self, message=None, details=None):
        self.message = message or self.__class__.__doc__ or self.code
        self.details = details
        super().__init__(self.message)

    def to_dict(self):
        data = {"ok": False, "error": self.code, "message": self.message}
        if self.details:
            data["details"] = self.details
        return data

    def to_response(self):
        """(JSON body, HTTP status) for a blueprint to return."""
        return jsonify(self.to_dict()), self.http_status


# --- Pipeline ---

class InvalidTransition(OnboardingError):
    """The prospect is not in a state that allows this step."""

    code = "invalid_transition"
    http_status = 409


class AlreadyLinked(OnboardingError):
    """An account has already been created for this prospect."""

    code = "already_linked"
    http_status = 409


class DuplicateProspect(OnboardingError):
    """A prospect with this email already exists."""

    code = "duplicate_prospect"
    http_status = 409


class DuplicateAccount(OnboardingError):
    """A user with this email already exists."""

    code = "duplicate_account"
    http_status = 409


class PaymentError(OnboardingError):
    """The payment cannot be processed in its current state."""

    code = "payment_error"
    http_status = 409


# --- Availability ---

class SlotUnavailable(OnboardingError):
    """This slot is no longer available."""

    code = "slot_unavailable"
    http_status = 409


# --- Surveys ---

class MissingRequiredAnswer(OnboardingError):
    """One or more required questions were not answered."""

    code = "missing_required_answer"
    http_status = 422


class InvalidAnswerFormat(OnboardingError):
    """One or more answers do not match their question type."""

    code = "invalid_answer_format"
    http_status = 422


class RetakeNotAllowed(OnboardingError):
    """You have already completed this survey."""

    code = "retake_not_allowed"
    http_status = 409


class SurveyUnavailable(OnboardingError):
    """This survey is not accepting submissions."""

    code = "survey_unavailable"
    http_status = 409


class InvalidQuestionConfig(OnboardingError):
    """The question definition is invalid for its type."""

    code = "invalid_question_config"
    http_status = 422


class InvalidReorder(OnboardingError):
    """The new order must list every question of the survey exactly once."""

    code = "invalid_reorder"
    http_status = 422


# --- Shared ---

class NotFound(OnboardingError):
    """The requested record does not exist."""

    code = "not_found"
    http_status = 404


class ValidationFailed(OnboardingError):
    """The submitted data is invalid."""

    code = "validation_failed"
    http_status = 422
