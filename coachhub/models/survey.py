"""Survey models (surveys, quizzes and the public assessment).

- Survey: a QUIZ or SURVEY with a scoring policy and a status
  (DRAFT -> PUBLISHED -> CLOSED).
- SurveyQuestion: one question; sort_order is unique per survey.
  Type-specific settings live in ``config`` (Likert bounds and labels,
  text length limits) and are read through services/question_config.py.
- SurveyOption: an option of a choice question; is_correct only matters
  when the parent survey is a quiz.
- SurveySubmission: one respondent's answers and the computed score.
"""

import uuid

from coachhub.extensions import db


class Survey(db.Model):
    __tablename__ = "surveys"

    TYPES = ["QUIZ", "SURVEY"]
    SCORE_MODES = ["NO_SCORING", "SCORE_ONLY", "PASS_FAIL"]
    STATUSES = ["DRAFT", "PUBLISHED", "CLOSED"]

    VALID_TRANSITIONS = {
        "DRAFT": ["PUBLISHED"],
        "PUBLISHED": ["CLOSED"],
        "CLOSED": ["PUBLISHED"],
    }

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    title = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, nullable=True)
    survey_type = db.Column(db.String(20), default="SURVEY", nullable=False)
    status = db.Column(db.String(20), default="DRAFT", nullable=False)
    score_mode = db.Column(db.String(20), default="NO_SCORING", nullable=False)
    passing_score = db.Column(db.Integer, nullable=True)  # percent, PASS_FAIL only
    allow_retake = db.Column(db.Boolean, default=False, nullable=False)
    show_results = db.Column(db.Boolean, default=False, nullable=False)
    is_anonymous = db.Column(db.Boolean, default=False, nullable=False)
    is_public = db.Column(db.Boolean, default=False, nullable=False)
    allowed_roles = db.Column(db.JSON, default=list)  # e.g. ["COACH"]
    closes_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_by_id = db.Column(
        db.String(36), db.ForeignKey("users.id"), nullable=True
    )
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    # --- Relationships ---
    questions = db.relationship(
        "SurveyQuestion",
        back_populates="survey",
        order_by="SurveyQuestion.sort_order",
        cascade="all, delete-orphan",
    )
    submissions = db.relationship(
        "SurveySubmission",
        back_populates="survey",
        lazy="dynamic",
        cascade="all, delete-orphan",
    )

    @property
    def is_quiz(self):
        return self.survey_type == "QUIZ"

    @property
    def is_scored(self):
        return self.is_quiz and self.score_mode != "NO_SCORING"

    def to_dict(self, include_questions=False):
        data = {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "type": self.survey_type,
            "status": self.status,
            "score_mode": self.score_mode,
            "passing_score": self.passing_score,
            "allow_retake": self.allow_retake,
            "show_results": self.show_results,
            "is_anonymous": self.is_anonymous,
            "is_public": self.is_public,
            "allowed_roles": self.allowed_roles or [],
            "closes_at": self.closes_at.isoformat() if self.closes_at else None,
        }
        if include_questions:
            data["questions"] = [q.to_dict() for q in self.questions]
        return data

    def __repr__(self):
        return f"<Survey {self.title} ({self.survey_type}, {self.status})>"


class SurveyQuestion(db.Model):
    __tablename__ = "survey_questions"
    __table_args__ = (
        db.UniqueConstraint(
            "survey_id", "sort_order", name="uq_question_survey_sort_order"
        ),
    )

    TYPES = [
        "MULTIPLE_CHOICE",
        "MULTIPLE_SELECT",
        "LIKERT_SCALE",
        "TEXT_SHORT",
        "TEXT_LONG",
    ]
    CHOICE_TYPES = ["MULTIPLE_CHOICE", "MULTIPLE_SELECT"]
    TEXT_TYPES = ["TEXT_SHORT", "TEXT_LONG"]

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    survey_id = db.Column(
        db.String(36), db.ForeignKey("surveys.id"), nullable=False, index=True
    )
    question_type = db.Column(db.String(30), nullable=False)
    text = db.Column(db.Text, nullable=False)
    description = db.Column(db.Text, nullable=True)
    is_required = db.Column(db.Boolean, default=True, nullable=False)
    sort_order = db.Column(db.Integer, nullable=False)
    # {"min_value", "max_value", "min_label", "max_label"} or
    # {"min_length", "max_length"}; empty for choice questions
    config = db.Column(db.JSON, default=dict)
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )

    # --- Relationships ---
    survey = db.relationship("Survey", back_populates="questions")
    options = db.relationship(
        "SurveyOption",
        back_populates="question",
        order_by="SurveyOption.sort_order",
        cascade="all, delete-orphan",
    )

    @property
    def is_choice(self):
        return self.question_type in self.CHOICE_TYPES

    def to_dict(self):
        return {
            "id": self.id,
            "survey_id": self.survey_id,
            "type": self.question_type,
            "text": self.text,
            "description": self.description,
            "is_required": self.is_required,
            "sort_order": self.sort_order,
            "config": self.config or {},
            "options": [o.to_dict() for o in self.options],
        }

    def __repr__(self):
        return f"<SurveyQuestion {self.question_type} #{self.sort_order}>"


class SurveyOption(db.Model):
    __tablename__ = "survey_options"

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    question_id = db.Column(
        db.String(36),
        db.ForeignKey("survey_questions.id"),
        nullable=False,
        index=True,
    )
    text = db.Column(db.String(500), nullable=False)
    is_correct = db.Column(db.Boolean, default=False, nullable=False)
    sort_order = db.Column(db.Integer, default=0, nullable=False)

    # --- Relationships ---
    question = db.relationship("SurveyQuestion", back_populates="options")

    def to_dict(self):
        return {
            "id": self.id,
            "text": self.text,
            "is_correct": self.is_correct,
            "sort_order": self.sort_order,
        }

    def __repr__(self):
        return f"<SurveyOption {self.text}>"


class SurveySubmission(db.Model):
    __tablename__ = "survey_submissions"

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    survey_id = db.Column(
        db.String(36), db.ForeignKey("surveys.id"), nullable=False, index=True
    )
    # Respondent identity; all NULL on anonymous surveys
    respondent_user_id = db.Column(
        db.String(36), db.ForeignKey("users.id"), nullable=True, index=True
    )
    respondent_email = db.Column(db.String(255), nullable=True, index=True)
    respondent_name = db.Column(db.String(255), nullable=True)
    prospect_id = db.Column(
        db.String(36), db.ForeignKey("prospects.id"), nullable=True
    )
    answers = db.Column(db.JSON, nullable=False)  # question_id -> normalized answer
    score_percentage = db.Column(db.Integer, nullable=True)
    passed = db.Column(db.Boolean, nullable=True)
    submitted_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )

    # --- Relationships ---
    survey = db.relationship("Survey", back_populates="submissions")

    def to_dict(self, include_answers=True):
        data = {
            "id": self.id,
            "survey_id": self.survey_id,
            "respondent_user_id": self.respondent_user_id,
            "respondent_email": self.respondent_email,
            "respondent_name": self.respondent_name,
            "prospect_id": self.prospect_id,
            "score_percentage": self.score_percentage,
            "passed": self.passed,
            "submitted_at": (
                self.submitted_at.isoformat() if self.submitted_at else None
            ),
        }
        if include_answers:
            data["answers"] = self.answers
        return data

    def __repr__(self):
        return f"<SurveySubmission {self.survey_id} score={self.score_percentage}>"
