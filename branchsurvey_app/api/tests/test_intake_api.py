"""
Anonymous respondent flow: start, fetch next question, answer, complete.

The respondent never authenticates; the session token returned by ``start``
is the only credential and is checked by the completion guard.
"""

import json
from datetime import timedelta
from unittest import mock

from django.contrib.auth import get_user_model
from django.utils import timezone
import pytest

from branchsurvey_app.surveys import guard
from branchsurvey_app.surveys.models import (
    BranchEndPolicy,
    QuestionType,
    Survey,
    SurveyResponse,
)
from branchsurvey_app.surveys.services import save_survey_tree
from branchsurvey_app.surveys.tree import QuestionNode

User = get_user_model()


@pytest.fixture
def survey(db):
    owner = User.objects.create_user(username="owner", password="x")
    survey = Survey.objects.create(owner=owner, name="Pets", status=Survey.Status.LIVE)
    pet = QuestionNode(
        text="Pet?", type=QuestionType.BRANCHING_CHOICE, options=["Dog", "Cat"]
    )
    pet.add_child(
        "Dog",
        QuestionNode(
            text="Treats?",
            type=QuestionType.MULTIPLE_SELECT,
            options=["Bone", "Biscuit", "Cheese"],
            max_selections=2,
        ),
    )
    pet.set_branch_end_policy("Cat", BranchEndPolicy.END_SURVEY)
    save_survey_tree(
        survey, [pet, QuestionNode(text="Happy?", type=QuestionType.LIKERT_SCALE)]
    )
    return survey


def post(client, url, payload):
    return client.post(url, data=json.dumps(payload), content_type="application/json")


def start(client, survey):
    r = post(client, f"/api/surveys/{survey.id}/start/", {})
    assert r.status_code == 201, r.content
    return r.json()


@pytest.mark.django_db
def test_full_dog_path(client, survey):
    started = start(client, survey)
    rid, sid = started["response_id"], started["session_id"]
    assert started["next"]["question"]["text"] == "Pet?"
    assert "branch_end_policy" not in started["next"]["question"]

    r = post(
        client,
        f"/api/responses/{rid}/answer/",
        {
            "session_id": sid,
            "question_id": started["next"]["question"]["id"],
            "answer": "Dog",
        },
    )
    assert r.status_code == 200, r.content
    treats = r.json()["next"]["question"]
    assert treats["text"] == "Treats?"
    assert treats["max_selections"] == 2

    r = post(
        client,
        f"/api/responses/{rid}/answer/",
        {"session_id": sid, "question_id": treats["id"], "answer": ["Bone", "Cheese"]},
    )
    happy = r.json()["next"]["question"]
    assert happy["type"] == "likert_scale"
    assert r.json()["answers"][1]["answer"] == "Bone, Cheese"

    r = client.get(f"/api/responses/{rid}/next/?session_id={sid}")
    assert r.status_code == 200
    assert r.json()["next"]["question"]["id"] == happy["id"]

    r = post(client, f"/api/responses/{rid}/complete/", {"session_id": sid})
    assert r.status_code == 400
    assert r.json()["error"] == "SURVEY_NOT_FINISHED"

    r = post(
        client,
        f"/api/responses/{rid}/answer/",
        {"session_id": sid, "question_id": happy["id"], "answer": 4},
    )
    assert r.json()["next"] == {"complete": True, "question": None}

    r = post(client, f"/api/responses/{rid}/complete/", {"session_id": sid})
    assert r.status_code == 200
    assert r.json()["status"] == "completed"
    assert r.json()["completed_at"]


@pytest.mark.django_db
def test_cat_ends_survey(client, survey):
    started = start(client, survey)
    rid, sid = started["response_id"], started["session_id"]
    r = post(
        client,
        f"/api/responses/{rid}/answer/",
        {"session_id": sid, "question_id": started["next"]["question"]["id"], "answer": "Cat"},
    )
    assert r.json()["next"]["complete"] is True
    r = post(client, f"/api/responses/{rid}/complete/", {"session_id": sid})
    assert r.status_code == 200


@pytest.mark.django_db
def test_draft_survey_cannot_be_started(client, survey):
    survey.status = Survey.Status.DRAFT
    survey.save()
    r = post(client, f"/api/surveys/{survey.id}/start/", {})
    assert r.status_code == 409
    assert r.json()["error"] == "SURVEY_NOT_LIVE"


@pytest.mark.django_db
def test_start_unknown_survey(client, db):
    r = post(client, "/api/surveys/9999/start/", {})
    assert r.status_code == 404


@pytest.mark.django_db
def test_invalid_answer_is_rejected(client, survey):
    started = start(client, survey)
    r = post(
        client,
        f"/api/responses/{started['response_id']}/answer/",
        {
            "session_id": started["session_id"],
            "question_id": started["next"]["question"]["id"],
            "answer": "Parrot",
        },
    )
    assert r.status_code == 400
    assert r.json()["error"] == "invalid_answer"


@pytest.mark.django_db
def test_skipping_ahead_is_rejected(client, survey):
    started = start(client, survey)
    happy = survey.questions.get(text="Happy?")
    r = post(
        client,
        f"/api/responses/{started['response_id']}/answer/",
        {"session_id": started["session_id"], "question_id": happy.id, "answer": 3},
    )
    assert r.status_code == 400
    assert r.json()["error"] == "OUT_OF_SEQUENCE"


@pytest.mark.django_db
def test_missing_fields(client, survey):
    started = start(client, survey)
    r = post(client, f"/api/responses/{started['response_id']}/answer/", {"answer": "Dog"})
    assert r.status_code == 400
    r = client.get(f"/api/responses/{started['response_id']}/next/")
    assert r.status_code == 400


@pytest.mark.django_db
def test_guard_errors_map_to_http_status(client, survey, settings):
    started = start(client, survey)
    rid, sid = started["response_id"], started["session_id"]

    r = post(client, "/api/responses/9999/abandon/", {"session_id": sid})
    assert r.status_code == 404
    assert r.json()["error"] == "RESPONSE_NOT_FOUND"

    r = post(client, f"/api/responses/{rid}/abandon/", {"session_id": "not-mine"})
    assert r.status_code == 403
    assert r.json()["error"] == "SESSION_MISMATCH"

    r = post(client, f"/api/responses/{rid}/abandon/", {"session_id": sid})
    assert r.status_code == 200
    assert r.json()["status"] == "abandoned"

    r = client.get(f"/api/responses/{rid}/next/?session_id={sid}")
    assert r.status_code == 410
    assert r.json() == {"error": "RESPONSE_EXPIRED", "detail": "Response is no longer open"}


@pytest.mark.django_db
def test_completed_response_returns_conflict(client, survey):
    started = start(client, survey)
    rid, sid = started["response_id"], started["session_id"]
    post(
        client,
        f"/api/responses/{rid}/answer/",
        {"session_id": sid, "question_id": started["next"]["question"]["id"], "answer": "Cat"},
    )
    post(client, f"/api/responses/{rid}/complete/", {"session_id": sid})

    r = post(
        client,
        f"/api/responses/{rid}/answer/",
        {"session_id": sid, "question_id": started["next"]["question"]["id"], "answer": "Dog"},
    )
    assert r.status_code == 409
    assert r.json()["error"] == "ALREADY_COMPLETED"
    assert SurveyResponse.objects.get(pk=rid).answers[0]["answer"] == "Cat"


@pytest.mark.django_db
def test_idle_response_expires(client, survey, settings):
    settings.BRANCHSURVEY_RESPONSE_TTL_MINUTES = 10
    started = start(client, survey)
    rid, sid = started["response_id"], started["session_id"]
    SurveyResponse.objects.filter(pk=rid).update(
        last_activity=timezone.now() - timedelta(minutes=11)
    )
    r = post(
        client,
        f"/api/responses/{rid}/answer/",
        {"session_id": sid, "question_id": started["next"]["question"]["id"], "answer": "Dog"},
    )
    assert r.status_code == 410


@pytest.mark.django_db
def test_abandon_that_keeps_losing_races_returns_conflict(client, survey):
    started = start(client, survey)
    rid, sid = started["response_id"], started["session_id"]

    with mock.patch.object(guard, "_conditional_update", return_value=0):
        r = post(client, f"/api/responses/{rid}/abandon/", {"session_id": sid})

    assert r.status_code == 409
    assert r.json()["error"] == "CONFLICT"
    assert SurveyResponse.objects.get(pk=rid).status == SurveyResponse.Status.IN_PROGRESS
