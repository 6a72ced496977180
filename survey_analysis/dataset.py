import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Sequence

from survey_analysis.aligner import align_responses
from survey_analysis.errors import NoQuestionsFound, NoSurveysFound
from survey_analysis.pseudonymizer import PseudonymMap, build_pseudonym_map

logger = logging.getLogger(__name__)

SHORT_TEXT = "short-text"
CHOICE = "mcq"

# raw question type -> type the model sees
QUESTION_TYPE_MAP = {
    "text": SHORT_TEXT,
    "multiple_choice": CHOICE,
    "single_choice": CHOICE,
    "dropdown": CHOICE,
    "checkbox": CHOICE,
}

RESPONSE_ALIGNMENT = {
    "type": "index",
    "definition": 'Index i refers to the same respondent across all questions. Empty string "" means missing answer.',
}


def normalize_question_type(raw_type: Any) -> str:
    if isinstance(raw_type, str):
        return QUESTION_TYPE_MAP.get(raw_type.strip().lower(), SHORT_TEXT)
    return SHORT_TEXT


@dataclass
class AssembledDataset:
    surveys: List[Dict[str, Any]]
    questions: List[Dict[str, Any]]
    responses_by_question: Dict[str, List[str]]
    response_count: int
    pseudonyms: PseudonymMap
    response_alignment: Dict[str, str] = field(default_factory=lambda: dict(RESPONSE_ALIGNMENT))

    def payload(self) -> Dict[str, Any]:
        """What is sent to the model. Reverse maps stay on our side."""
        return {
            "surveys": self.surveys,
            "questions": self.questions,
            "responseAlignment": self.response_alignment,
            "responsesByQuestion": self.responses_by_question,
            "responseCount": self.response_count,
        }


def compose_dataset(surveys: Sequence[dict], questions: Sequence[dict], responses: Sequence[dict]) -> AssembledDataset:
    if not surveys:
        raise NoSurveysFound("No surveys found with the provided IDs")
    if not questions:
        raise NoQuestionsFound("No questions found for the provided surveys")

    pseudonyms = build_pseudonym_map(surveys, questions)

    surveys_formatted = [
        {
            "surveyId": pseudonyms.survey_token(s["_id"]),
            "title": s.get("title") or "",
            "description": s.get("description") or "",
        }
        for s in surveys
    ]
    questions_formatted = [
        {
            "questionId": pseudonyms.question_token(q["_id"]),
            "surveyId": pseudonyms.survey_token(q.get("surveyId")),
            "question": q.get("text") or "",
            "type": normalize_question_type(q.get("type")),
            "options": list(q.get("options") or []),
        }
        for q in questions
    ]

    aligned = align_responses(responses, pseudonyms.questions)

    return AssembledDataset(
        surveys=surveys_formatted,
        questions=questions_formatted,
        responses_by_question=aligned.matrix,
        response_count=aligned.respondent_count,
        pseudonyms=pseudonyms,
    )


def assemble_dataset(store, survey_ids: Sequence[str]) -> AssembledDataset:
    """Fetch surveys, questions and eligible responses and build the model payload."""
    surveys = store.find_surveys(survey_ids)
    if not surveys:
        raise NoSurveysFound("No surveys found with the provided IDs")

    questions = store.find_questions(survey_ids)
    if not questions:
        raise NoQuestionsFound("No questions found for the provided surveys")

    responses = store.find_responses(survey_ids)
    dataset = compose_dataset(surveys, questions, responses)
    logger.info(
        "Assembled analysis dataset",
        extra={"surveys": len(surveys), "questions": len(questions), "respondents": dataset.response_count},
    )
    return dataset
