from __future__ import annotations

from django.conf import settings
from django.db import models
from django.db.models import Q


class QuestionType(models.TextChoices):
    MULTIPLE_CHOICE = "multiple_choice", "Multiple choice"
    MULTIPLE_SELECT = "multiple_select", "Multiple select"
    RANKING = "ranking", "Ranking"
    BRANCHING_CHOICE = "branching_choice", "Branching choice"
    SHORT_ANSWER = "short_answer", "Short answer"
    NUMERIC_RATING = "numeric_rating", "Numeric rating (0-10)"
    LIKERT_SCALE = "likert_scale", "Likert scale (1-5)"
    IMAGE_CHOICE = "image_choice", "Image choice"
    IMAGE_BANNER = "image_banner", "Image banner"
    CHOICE_WITH_OTHER = "choice_with_other", "Choice with other"


class BranchEndPolicy(models.TextChoices):
    END_SURVEY = "end_survey", "End the survey"
    CONTINUE = "continue", "Continue with the next question"


class Survey(models.Model):
    class Status(models.TextChoices):
        DRAFT = "draft", "Draft"
        LIVE = "live", "Live"
        CLOSED = "closed", "Closed"

    owner = models.ForeignKey(
        settings.AUTH_USER_MODEL, on_delete=models.CASCADE, related_name="surveys"
    )
    name = models.CharField(max_length=255)
    description = models.TextField(blank=True)
    status = models.CharField(
        max_length=20, choices=Status.choices, default=Status.DRAFT
    )
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    def __str__(self) -> str:  # pragma: no cover
        return self.name

    def is_live(self) -> bool:
        return self.status == self.Status.LIVE


class SurveyQuestion(models.Model):
    """One row of the flattened question tree.

    Root questions have no ``parent_question``. Follow-up questions point at
    the ``branching_choice`` question that leads to them and record which of
    its options does so in ``parent_branch_option``.
    """

    survey = models.ForeignKey(
        Survey, on_delete=models.CASCADE, related_name="questions"
    )
    text = models.TextField(blank=True)
    type = models.CharField(max_length=32, choices=QuestionType.choices)
    options = models.JSONField(default=list, blank=True)
    order = models.PositiveIntegerField(default=0)
    parent_question = models.ForeignKey(
        "self",
        null=True,
        blank=True,
        on_delete=models.CASCADE,
        related_name="follow_ups",
    )
    parent_branch_option = models.CharField(max_length=255, blank=True, default="")
    branch_end_policy = models.JSONField(
        default=dict,
        blank=True,
        help_text="Maps an option label to end_survey or continue.",
    )
    max_selections = models.PositiveIntegerField(null=True, blank=True)
    image_urls = models.JSONField(default=list, blank=True)

    class Meta:
        ordering = ["order", "id"]
        constraints = [
            models.CheckConstraint(
                condition=(
                    Q(parent_question__isnull=True, parent_branch_option="")
                    | (
                        Q(parent_question__isnull=False)
                        & ~Q(parent_branch_option="")
                    )
                ),
                name="surveyquestion_branch_option_iff_parent",
            )
        ]

    def __str__(self) -> str:  # pragma: no cover
        return self.text or f"Question {self.pk}"


class SurveyResponse(models.Model):
    class Status(models.TextChoices):
        IN_PROGRESS = "in_progress", "In progress"
        COMPLETED = "completed", "Completed"
        ABANDONED = "abandoned", "Abandoned"
        EXPIRED = "expired", "Expired"

    survey = models.ForeignKey(
        Survey, on_delete=models.CASCADE, related_name="responses"
    )
    # Opaque token handed to the respondent when the response is started.
    session_id = models.CharField(max_length=64, db_index=True)
    status = models.CharField(
        max_length=20, choices=Status.choices, default=Status.IN_PROGRESS
    )
    # Ordered list of {"question_id": ..., "answer": "<encoded text>"}
    answers = models.JSONField(default=list, blank=True)
    # Bumped on every successful write; the completion guard compares it.
    version = models.PositiveIntegerField(default=0)
    created_at = models.DateTimeField(auto_now_add=True)
    last_activity = models.DateTimeField()
    completed_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        indexes = [
            models.Index(
                fields=["survey", "status"], name="surveyresp_survey_status_idx"
            ),
        ]

    def __str__(self) -> str:  # pragma: no cover
        return f"Response {self.pk} ({self.status})"

    @property
    def is_terminal(self) -> bool:
        return self.status != self.Status.IN_PROGRESS
