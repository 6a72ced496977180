import pytest
from fastapi.testclient import TestClient

from conftest import FakeAnalyzer, FakeStore, ManualDispatcher, analysis_result_for
from survey_analysis.main import create_app

HEADERS = {"X-User-Id": "owner"}


@pytest.fixture
def analyzer():
    return FakeAnalyzer(result=analysis_result_for)


@pytest.fixture
def client(store, analyzer, dispatcher):
    return TestClient(create_app(store=store, analyzer=analyzer, dispatcher=dispatcher))


def test_root(client):
    assert client.get("/").json()["message"] == "Survey Analysis API"


def test_health(client, store):
    assert client.get("/health").json()["status"] == "healthy"
    store.fail_on.add("ping")
    assert client.get("/health").status_code == 503


def test_create_returns_202_before_analysis_runs(client, analyzer, dispatcher):
    resp = client.post("/analyses", json={"surveyIds": "S1"}, headers=HEADERS)

    assert resp.status_code == 202
    body = resp.json()
    assert body["status"] == "processing"
    assert body["progress"] == 0
    assert body["type"] == "single"
    assert body["analysisId"]
    assert analyzer.calls == []
    assert len(dispatcher.pending) == 1


def test_status_polling_until_ready(client, dispatcher):
    analysis_id = client.post("/analyses", json={"surveyIds": ["S1"]}, headers=HEADERS).json()["analysisId"]

    pending = client.get(f"/analyses/{analysis_id}", headers=HEADERS).json()
    assert pending["status"] == "processing"
    assert pending["data"] is None

    dispatcher.drain()

    ready = client.get(f"/analyses/{analysis_id}", headers=HEADERS).json()
    assert ready["status"] == "ready"
    assert ready["progress"] == 100
    assert ready["surveyIds"] == ["S1"]
    assert ready["data"]["surveys"][0]["surveyId"] == "S1"
    assert ready["createdAt"] and ready["updatedAt"]


def test_failed_analysis_hides_data(store, dispatcher):
    client = TestClient(create_app(store=store, analyzer=FakeAnalyzer(error=RuntimeError("x")), dispatcher=dispatcher))
    analysis_id = client.post("/analyses", json={"surveyIds": "S1"}, headers=HEADERS).json()["analysisId"]

    dispatcher.drain()

    body = client.get(f"/analyses/{analysis_id}", headers=HEADERS).json()
    assert (body["status"], body["progress"], body["data"]) == ("failed", 0, None)
    assert "error" not in body


@pytest.mark.parametrize("payload", [{}, {"surveyIds": []}, {"surveyIds": 5}, {"surveyIds": [""]}])
def test_invalid_input_is_rejected_without_a_job(client, store, payload):
    resp = client.post("/analyses", json=payload, headers=HEADERS)

    assert resp.status_code == 400
    assert store.analyses == {}


def test_missing_user_is_unauthorized(client):
    assert client.post("/analyses", json={"surveyIds": "S1"}).status_code == 401
    assert client.get("/analyses").status_code == 401


def test_unknown_survey_and_no_questions(dispatcher):
    store = FakeStore([{"_id": "S1", "title": "empty"}], [], [])
    client = TestClient(create_app(store=store, analyzer=FakeAnalyzer(), dispatcher=dispatcher))

    assert client.post("/analyses", json={"surveyIds": "S2"}, headers=HEADERS).status_code == 404
    assert client.post("/analyses", json={"surveyIds": "S1"}, headers=HEADERS).status_code == 422
    assert store.analyses == {}


def test_storage_failure_on_submit(client, store):
    store.fail_on.add("find_responses")

    resp = client.post("/analyses", json={"surveyIds": "S1"}, headers=HEADERS)

    assert resp.status_code == 500
    assert store.analyses == {}


def test_other_owner_cannot_see_analysis(client):
    analysis_id = client.post("/analyses", json={"surveyIds": "S1"}, headers=HEADERS).json()["analysisId"]

    assert client.get(f"/analyses/{analysis_id}", headers={"X-User-Id": "someone"}).status_code == 404
    assert client.get("/analyses/nope", headers=HEADERS).status_code == 404


def test_list_analyses(client, dispatcher):
    first = client.post("/analyses", json={"surveyIds": "S1"}, headers=HEADERS).json()["analysisId"]
    dispatcher.drain()
    second = client.post("/analyses", json={"surveyIds": "S1"}, headers=HEADERS).json()["analysisId"]

    body = client.get("/analyses", headers=HEADERS).json()

    assert body["count"] == 2
    by_id = {a["analysisId"]: a for a in body["analyses"]}
    assert by_id[first]["status"] == "ready" and by_id[first]["data"] is not None
    assert by_id[second]["status"] == "processing" and by_id[second]["data"] is None


def test_stopping_the_app_fails_queued_analyses(store, analyzer, dispatcher):
    app = create_app(store=store, analyzer=analyzer, dispatcher=dispatcher)

    with TestClient(app) as client:
        analysis_id = client.post("/analyses", json={"surveyIds": "S1"}, headers=HEADERS).json()["analysisId"]

    assert dispatcher.pending == []
    assert analyzer.calls == []
    assert store.analyses[analysis_id]["status"] == "failed"
