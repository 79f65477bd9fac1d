"""
Security tests for respondent sessions and survey ownership.

These tests verify that a respondent can only write to the response their
session token was issued for, and that survey results are only visible to
the survey owner.
"""

import json

from django.contrib.auth import get_user_model
import pytest

from branchsurvey_app.surveys.guard import start_response
from branchsurvey_app.surveys.models import QuestionType, Survey, SurveyResponse
from branchsurvey_app.surveys.services import save_survey_tree
from branchsurvey_app.surveys.tree import QuestionNode

User = get_user_model()
TEST_PASSWORD = "test-pass"


def auth_hdr(client, username: str, password: str) -> dict:
    """Helper to get JWT auth headers for API tests."""
    resp = client.post(
        "/api/token",
        data=json.dumps({"username": username, "password": password}),
        content_type="application/json",
    )
    assert resp.status_code == 200, resp.content
    return {"HTTP_AUTHORIZATION": f"Bearer {resp.json()['access']}"}


@pytest.fixture
def survey(db):
    owner = User.objects.create_user(username="owner@test.com", password=TEST_PASSWORD)
    survey = Survey.objects.create(owner=owner, name="Private", status=Survey.Status.LIVE)
    save_survey_tree(
        survey,
        [QuestionNode(text="Secret?", type=QuestionType.SHORT_ANSWER)],
    )
    return survey


@pytest.mark.django_db
def test_session_token_of_one_response_cannot_write_another(client, survey):
    """A respondent cannot answer on someone else's response with their own token."""
    mine = start_response(survey)
    theirs = start_response(survey)
    question = survey.questions.get()

    resp = client.post(
        f"/api/responses/{theirs.pk}/answer/",
        data=json.dumps(
            {"session_id": mine.session_id, "question_id": question.id, "answer": "hi"}
        ),
        content_type="application/json",
    )

    assert resp.status_code == 403
    assert SurveyResponse.objects.get(pk=theirs.pk).answers == []


@pytest.mark.django_db
def test_session_token_cannot_complete_or_abandon_another_response(client, survey):
    mine = start_response(survey)
    theirs = start_response(survey)

    for action in ("complete", "abandon"):
        resp = client.post(
            f"/api/responses/{theirs.pk}/{action}/",
            data=json.dumps({"session_id": mine.session_id}),
            content_type="application/json",
        )
        assert resp.status_code == 403

    theirs.refresh_from_db()
    assert theirs.status == SurveyResponse.Status.IN_PROGRESS


@pytest.mark.django_db
def test_next_question_does_not_leak_to_wrong_session(client, survey):
    theirs = start_response(survey)
    resp = client.get(f"/api/responses/{theirs.pk}/next/?session_id=guess")
    assert resp.status_code == 403
    assert "question" not in json.dumps(resp.json())


@pytest.mark.django_db
def test_logged_in_user_gains_nothing_on_intake(client, survey):
    """Authentication does not substitute for the session token."""
    hdrs = auth_hdr(client, "owner@test.com", TEST_PASSWORD)
    theirs = start_response(survey)
    resp = client.post(
        f"/api/responses/{theirs.pk}/abandon/",
        data=json.dumps({"session_id": ""}),
        content_type="application/json",
        **hdrs,
    )
    assert resp.status_code in (400, 403)
    theirs.refresh_from_db()
    assert theirs.status == SurveyResponse.Status.IN_PROGRESS


@pytest.mark.django_db
def test_non_owner_cannot_read_results(client, survey):
    User.objects.create_user(username="other@test.com", password=TEST_PASSWORD)
    hdrs = auth_hdr(client, "other@test.com", TEST_PASSWORD)

    for path in ("stats", "responses", "tree"):
        resp = client.get(f"/api/surveys/{survey.id}/{path}/", **hdrs)
        assert resp.status_code == 403, path


@pytest.mark.django_db
def test_response_listing_never_exposes_session_tokens(client, survey):
    start_response(survey)
    hdrs = auth_hdr(client, "owner@test.com", TEST_PASSWORD)
    resp = client.get(f"/api/surveys/{survey.id}/responses/", **hdrs)
    assert resp.status_code == 200
    assert all("session_id" not in r for r in resp.json())
