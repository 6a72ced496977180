import copy
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Optional

from survey_analysis.errors import UnknownTokenError

logger = logging.getLogger(__name__)


@dataclass
class PseudonymMap:
    """
    Request-scoped pair of bidirectional maps between real ids and short tokens.

    Surveys become s1, s2, ... and questions q1, q2, ... in the order they were
    handed to build_pseudonym_map. A fresh map is built for every analysis.
    """
    surveys: Dict[str, str] = field(default_factory=dict)
    questions: Dict[str, str] = field(default_factory=dict)
    reverse_surveys: Dict[str, str] = field(default_factory=dict)
    reverse_questions: Dict[str, str] = field(default_factory=dict)

    def survey_token(self, real_id: Any) -> Optional[str]:
        return self.surveys.get(str(real_id))

    def question_token(self, real_id: Any) -> Optional[str]:
        return self.questions.get(str(real_id))

    def reveal_survey(self, token: str) -> Optional[str]:
        return self.reverse_surveys.get(token)

    def reveal_question(self, token: str) -> Optional[str]:
        return self.reverse_questions.get(token)

    def to_id_mapping(self) -> Dict[str, Dict[str, str]]:
        # shape stored on the analysis record
        return {"surveys": dict(self.reverse_surveys), "questions": dict(self.reverse_questions)}


def _enumerate_tokens(records: Iterable[dict], prefix: str):
    forward: Dict[str, str] = {}
    reverse: Dict[str, str] = {}
    for i, record in enumerate(records, start=1):
        token = f"{prefix}{i}"
        real_id = str(record["_id"])
        forward[real_id] = token
        reverse[token] = real_id
    return forward, reverse


def build_pseudonym_map(surveys: Iterable[dict], questions: Iterable[dict]) -> PseudonymMap:
    survey_fwd, survey_rev = _enumerate_tokens(surveys, "s")
    question_fwd, question_rev = _enumerate_tokens(questions, "q")
    return PseudonymMap(
        surveys=survey_fwd,
        questions=question_fwd,
        reverse_surveys=survey_rev,
        reverse_questions=question_rev,
    )


def _reveal(token: Any, reverse: Dict[str, str], kind: str, strict: bool) -> Any:
    if isinstance(token, str) and token in reverse:
        return reverse[token]
    if strict:
        raise UnknownTokenError(f"Analysis result references unknown {kind} token: {token!r}")
    logger.warning("Unknown %s token in analysis result, leaving as is: %r", kind, token)
    return token


def restore_survey_ids(result: dict, reverse_surveys: Dict[str, str], strict: bool = False) -> dict:
    """Return a copy of `result` with surveys[].surveyId tokens replaced by real ids."""
    converted = copy.deepcopy(result)
    surveys = converted.get("surveys")
    if isinstance(surveys, list):
        for summary in surveys:
            if isinstance(summary, dict) and "surveyId" in summary:
                summary["surveyId"] = _reveal(summary["surveyId"], reverse_surveys, "survey", strict)
    return converted


def restore_question_ids(result: Any, reverse_questions: Dict[str, str], strict: bool = False) -> Any:
    # Not used by the current result shape; rewrites any nested "questionId" field.
    if isinstance(result, dict):
        out = {}
        for key, value in result.items():
            if key == "questionId":
                out[key] = _reveal(value, reverse_questions, "question", strict)
            else:
                out[key] = restore_question_ids(value, reverse_questions, strict)
        return out
    if isinstance(result, list):
        return [restore_question_ids(item, reverse_questions, strict) for item in result]
    return result
