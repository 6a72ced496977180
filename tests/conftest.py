import copy
import itertools
from datetime import datetime, timedelta

import pytest

from survey_analysis.analysis_job import PROCESSING, failed_fields

BASE_TIME = datetime(2025, 1, 1, 12, 0, 0)


def at(minutes: int) -> datetime:
    return BASE_TIME + timedelta(minutes=minutes)


class FakeStore:
    """Dict-backed stand-in for MongoStore with the same update rules."""

    def __init__(self, surveys=None, questions=None, responses=None):
        self.surveys = list(surveys or [])
        self.questions = list(questions or [])
        self.responses = list(responses or [])
        self.analyses = {}
        self.updates = []
        self._ids = itertools.count(1)
        self.fail_on = set()

    def _maybe_fail(self, op):
        if op in self.fail_on:
            raise RuntimeError(f"storage failure in {op}")

    def ping(self):
        self._maybe_fail("ping")

    def find_surveys(self, survey_ids):
        self._maybe_fail("find_surveys")
        return [s for s in self.surveys if s["_id"] in survey_ids]

    def find_questions(self, survey_ids):
        self._maybe_fail("find_questions")
        found = [q for q in self.questions if q["surveyId"] in survey_ids]
        return sorted(found, key=lambda q: q.get("order", 0))

    def find_responses(self, survey_ids):
        self._maybe_fail("find_responses")
        return [r for r in self.responses if r["surveyId"] in survey_ids and not r.get("isFlaggedSpam")]

    def create_analysis(self, doc):
        self._maybe_fail("create_analysis")
        analysis_id = f"a{next(self._ids)}"
        doc = copy.deepcopy(doc)
        doc["_id"] = analysis_id
        self.analyses[analysis_id] = doc
        return analysis_id

    def update_analysis(self, analysis_id, changes):
        self._maybe_fail("update_analysis")
        doc = self.analyses.get(analysis_id)
        if doc is None or doc["status"] != PROCESSING:
            return False
        changes = copy.deepcopy(changes)
        if "status" not in changes and "progress" in changes:
            changes["progress"] = max(doc["progress"], changes["progress"])
        doc.update(changes)
        self.updates.append((analysis_id, changes))
        return True

    def fail_stale_analyses(self, updated_before, error):
        count = 0
        for doc in self.analyses.values():
            if doc["status"] == PROCESSING and doc["updatedAt"] < updated_before:
                doc.update(failed_fields(error), updatedAt=datetime.utcnow())
                count += 1
        return count

    def get_analysis(self, owner_id, analysis_id):
        doc = self.analyses.get(analysis_id)
        if doc is None or doc["ownerId"] != owner_id:
            return None
        return copy.deepcopy(doc)

    def list_analyses(self, owner_id):
        docs = [copy.deepcopy(d) for d in self.analyses.values() if d["ownerId"] == owner_id]
        return sorted(docs, key=lambda d: d["createdAt"], reverse=True)


class ManualDispatcher:
    """Holds dispatched tasks until the test runs them."""

    def __init__(self):
        self.pending = []

    def dispatch(self, fn, task):
        self.pending.append((fn, task))

    def drain(self):
        while self.pending:
            fn, task = self.pending.pop(0)
            fn(task)

    def shutdown(self, wait=True, timeout=None, cancel_pending=False):
        if not cancel_pending:
            self.drain()
            return []
        pending, self.pending = [task for _, task in self.pending], []
        return pending


class FakeAnalyzer:
    def __init__(self, result=None, error=None):
        self.result = result
        self.error = error
        self.calls = []

    def analyze(self, dataset):
        self.calls.append(copy.deepcopy(dataset))
        if self.error is not None:
            raise self.error
        if callable(self.result):
            return self.result(dataset)
        return copy.deepcopy(self.result)


def analysis_result_for(dataset):
    """A schema-valid answer that echoes back the survey tokens it was given."""
    return {
        "overview": f"{dataset['responseCount']} out of {dataset['responseCount']} responses were used",
        "surveys": [
            {
                "surveyId": s["surveyId"],
                "responseCountUsed": dataset["responseCount"],
                "findings": [{"title": "Most picked a", "description": "a was chosen more often"}],
                "insights": [{"theme": "greeting", "title": "Friendly", "description": "People said hi", "examples": ["hi"]}],
                "correlations": [],
                "caveats": ["Small sample"],
            }
            for s in dataset["surveys"]
        ],
        "dataQualityNotes": {"confidenceScore": 0.3, "confidenceExplanation": "Only a few responses", "notes": []},
    }


@pytest.fixture
def survey_data():
    """S1 with a free-text and a choice question; two respondents."""
    surveys = [{"_id": "S1", "title": "Campus", "description": "Campus life", "createdAt": at(0)}]
    questions = [
        {"_id": "Q1", "surveyId": "S1", "order": 1, "text": "Say something", "type": "text", "options": []},
        {"_id": "Q2", "surveyId": "S1", "order": 2, "text": "Pick one", "type": "single_choice", "options": ["a", "b"]},
    ]
    responses = [
        {
            "_id": "R1", "surveyId": "S1", "userId": "U1", "submittedAt": at(1),
            "answers": [{"questionId": "Q1", "value": "hi"}, {"questionId": "Q2", "value": "a"}],
        },
        {
            "_id": "R2", "surveyId": "S1", "userId": "U2", "submittedAt": at(2),
            "answers": [{"questionId": "Q2", "value": "b"}],
        },
    ]
    return surveys, questions, responses


@pytest.fixture
def store(survey_data):
    surveys, questions, responses = survey_data
    return FakeStore(surveys, questions, responses)


@pytest.fixture
def dispatcher():
    return ManualDispatcher()
