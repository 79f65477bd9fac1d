from django.contrib import admin

from .models import Survey, SurveyQuestion, SurveyResponse


class SurveyQuestionInline(admin.TabularInline):
    model = SurveyQuestion
    fk_name = "survey"
    extra = 0
    fields = ("order", "text", "type", "parent_question", "parent_branch_option")
    readonly_fields = ("parent_question", "parent_branch_option")
    ordering = ("order",)


@admin.register(Survey)
class SurveyAdmin(admin.ModelAdmin):
    list_display = ("name", "owner", "status", "created_at", "updated_at")
    list_filter = ("status", "created_at")
    search_fields = ("name", "description", "owner__username")
    readonly_fields = ("created_at", "updated_at")
    inlines = [SurveyQuestionInline]


@admin.register(SurveyQuestion)
class SurveyQuestionAdmin(admin.ModelAdmin):
    list_display = (
        "text",
        "survey",
        "type",
        "order",
        "parent_question",
        "parent_branch_option",
    )
    list_filter = ("type",)
    search_fields = ("text", "survey__name")
    raw_id_fields = ("parent_question",)
    fieldsets = (
        (
            "Question",
            {"fields": ("survey", "text", "type", "options", "order")},
        ),
        (
            "Branching",
            {
                "fields": (
                    "parent_question",
                    "parent_branch_option",
                    "branch_end_policy",
                )
            },
        ),
        (
            "Type settings",
            {"fields": ("max_selections", "image_urls")},
        ),
    )


@admin.register(SurveyResponse)
class SurveyResponseAdmin(admin.ModelAdmin):
    list_display = ("id", "survey", "status", "last_activity", "completed_at")
    list_filter = ("status",)
    search_fields = ("survey__name",)
    # Writes must go through the completion guard
    readonly_fields = (
        "survey",
        "session_id",
        "status",
        "answers",
        "version",
        "created_at",
        "last_activity",
        "completed_at",
    )

    def has_add_permission(self, request):
        return False
