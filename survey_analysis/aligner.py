from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional


@dataclass
class AlignedAnswers:
    # question token -> one value per respondent, "" when missing
    matrix: Dict[str, List[str]] = field(default_factory=dict)
    respondent_count: int = 0
    # respondent ids in index order
    respondents: List[str] = field(default_factory=list)


def _respondent_key(response: dict) -> str:
    user_id = response.get("userId")
    if user_id is None:
        # anonymous submission counts as its own respondent
        return f"response:{response.get('_id')}"
    return str(user_id)


def submitted_at(response: dict) -> Optional[datetime]:
    """
    submittedAt as a naive UTC datetime. Older records may hold an ISO string
    or epoch milliseconds; anything unreadable counts as no timestamp.
    """
    value = response.get("submittedAt")
    try:
        if isinstance(value, str):
            value = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        elif isinstance(value, (int, float)) and not isinstance(value, bool):
            value = datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    except (ValueError, OverflowError, OSError):
        return None
    if not isinstance(value, datetime):
        return None
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def _is_later(candidate: dict, current: Optional[dict]) -> bool:
    if current is None:
        return True
    new_ts = submitted_at(candidate)
    old_ts = submitted_at(current)
    if new_ts is None:
        return False
    if old_ts is None:
        return True
    return new_ts > old_ts


def latest_responses(responses: Iterable[dict]) -> Dict[str, Dict[str, dict]]:
    """
    Group responses by respondent, then survey, keeping only the most recent
    submission for each (respondent, survey) pair. Respondent order is the
    order of first appearance.
    """
    by_user: Dict[str, Dict[str, dict]] = {}
    for response in responses:
        user_key = _respondent_key(response)
        survey_key = str(response.get("surveyId"))
        per_survey = by_user.setdefault(user_key, {})
        if _is_later(response, per_survey.get(survey_key)):
            per_survey[survey_key] = response
    return by_user


def align_responses(responses: Iterable[dict], question_tokens: Dict[str, str]) -> AlignedAnswers:
    """
    Build the index-aligned answer matrix.

    Index i of every question's list belongs to the same respondent. Answers
    that reference a question not in `question_tokens` are skipped.
    """
    by_user = latest_responses(responses)
    # index order is fixed from here on
    respondents = list(by_user.keys())
    count = len(respondents)

    matrix: Dict[str, List[str]] = {token: [""] * count for token in question_tokens.values()}

    for index, user_key in enumerate(respondents):
        for response in by_user[user_key].values():
            for answer in response.get("answers") or []:
                token = question_tokens.get(str(answer.get("questionId")))
                if token is None:
                    continue
                value = answer.get("value")
                matrix[token][index] = "" if value is None else str(value)

    return AlignedAnswers(matrix=matrix, respondent_count=count, respondents=respondents)
