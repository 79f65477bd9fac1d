from django.conf import settings
from django.db import migrations, models
import django.db.models.deletion


class Migration(migrations.Migration):
    initial = True

    dependencies = [
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name="Survey",
            fields=[
                (
                    "id",
                    models.BigAutoField(
                        auto_created=True,
                        primary_key=True,
                        serialize=False,
                        verbose_name="ID",
                    ),
                ),
                ("name", models.CharField(max_length=255)),
                ("description", models.TextField(blank=True)),
                (
                    "status",
                    models.CharField(
                        choices=[
                            ("draft", "Draft"),
                            ("live", "Live"),
                            ("closed", "Closed"),
                        ],
                        default="draft",
                        max_length=20,
                    ),
                ),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                (
                    "owner",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="surveys",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
            ],
        ),
        migrations.CreateModel(
            name="SurveyQuestion",
            fields=[
                (
                    "id",
                    models.BigAutoField(
                        auto_created=True,
                        primary_key=True,
                        serialize=False,
                        verbose_name="ID",
                    ),
                ),
                ("text", models.TextField(blank=True)),
                (
                    "type",
                    models.CharField(
                        choices=[
                            ("multiple_choice", "Multiple choice"),
                            ("multiple_select", "Multiple select"),
                            ("ranking", "Ranking"),
                            ("branching_choice", "Branching choice"),
                            ("short_answer", "Short answer"),
                            ("numeric_rating", "Numeric rating (0-10)"),
                            ("likert_scale", "Likert scale (1-5)"),
                            ("image_choice", "Image choice"),
                            ("image_banner", "Image banner"),
                            ("choice_with_other", "Choice with other"),
                        ],
                        max_length=32,
                    ),
                ),
                ("options", models.JSONField(blank=True, default=list)),
                ("order", models.PositiveIntegerField(default=0)),
                (
                    "parent_branch_option",
                    models.CharField(blank=True, default="", max_length=255),
                ),
                (
                    "branch_end_policy",
                    models.JSONField(
                        blank=True,
                        default=dict,
                        help_text="Maps an option label to end_survey or continue.",
                    ),
                ),
                (
                    "max_selections",
                    models.PositiveIntegerField(blank=True, null=True),
                ),
                ("image_urls", models.JSONField(blank=True, default=list)),
                (
                    "parent_question",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="follow_ups",
                        to="surveys.surveyquestion",
                    ),
                ),
                (
                    "survey",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="questions",
                        to="surveys.survey",
                    ),
                ),
            ],
            options={
                "ordering": ["order", "id"],
                "constraints": [
                    models.CheckConstraint(
                        condition=(
                            models.Q(
                                parent_question__isnull=True, parent_branch_option=""
                            )
                            | (
                                models.Q(parent_question__isnull=False)
                                & ~models.Q(parent_branch_option="")
                            )
                        ),
                        name="surveyquestion_branch_option_iff_parent",
                    )
                ],
            },
        ),
        migrations.CreateModel(
            name="SurveyResponse",
            fields=[
                (
                    "id",
                    models.BigAutoField(
                        auto_created=True,
                        primary_key=True,
                        serialize=False,
                        verbose_name="ID",
                    ),
                ),
                ("session_id", models.CharField(db_index=True, max_length=64)),
                (
                    "status",
                    models.CharField(
                        choices=[
                            ("in_progress", "In progress"),
                            ("completed", "Completed"),
                            ("abandoned", "Abandoned"),
                            ("expired", "Expired"),
                        ],
                        default="in_progress",
                        max_length=20,
                    ),
                ),
                ("answers", models.JSONField(blank=True, default=list)),
                ("version", models.PositiveIntegerField(default=0)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("last_activity", models.DateTimeField()),
                ("completed_at", models.DateTimeField(blank=True, null=True)),
                (
                    "survey",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="responses",
                        to="surveys.survey",
                    ),
                ),
            ],
            options={
                "indexes": [
                    models.Index(
                        fields=["survey", "status"],
                        name="surveyresp_survey_status_idx",
                    )
                ],
            },
        ),
    ]
