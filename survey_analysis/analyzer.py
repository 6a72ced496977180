import json
import logging
import re
from typing import Any, Dict, Optional

from groq import Groq

from survey_analysis import config
from survey_analysis.errors import AnalyzerError, MalformedAnalysisResult

logger = logging.getLogger(__name__)

ANALYSIS_RESPONSE_SCHEMA = {
    "type": "object",
    "additionalProperties": False,
    "properties": {
        "overview": {"type": "string"},
        "surveys": {
            "type": "array",
            "items": {
                "type": "object",
                "additionalProperties": False,
                "properties": {
                    "surveyId": {"type": "string"},
                    "responseCountUsed": {"type": "number"},
                    "findings": {
                        "type": "array",
                        "items": {
                            "type": "object",
                            "additionalProperties": False,
                            "properties": {
                                "title": {"type": "string"},
                                "description": {"type": "string"},
                            },
                            "required": ["title", "description"],
                        },
                    },
                    "insights": {
                        "type": "array",
                        "items": {
                            "type": "object",
                            "additionalProperties": False,
                            "properties": {
                                "theme": {"type": "string"},
                                "title": {"type": "string"},
                                "description": {"type": "string"},
                                "examples": {"type": "array", "items": {"type": "string"}},
                            },
                            "required": ["theme", "title", "description", "examples"],
                        },
                    },
                    "correlations": {
                        "type": "array",
                        "items": {
                            "type": "object",
                            "additionalProperties": False,
                            "properties": {
                                "description": {"type": "string"},
                                "evidence": {"type": "string"},
                            },
                            "required": ["description", "evidence"],
                        },
                    },
                    "caveats": {"type": "array", "items": {"type": "string"}},
                },
                "required": ["surveyId", "responseCountUsed", "findings", "insights", "correlations", "caveats"],
            },
        },
        "dataQualityNotes": {
            "type": "object",
            "additionalProperties": False,
            "properties": {
                "confidenceScore": {"type": "number", "minimum": 0, "maximum": 1},
                "confidenceExplanation": {"type": "string"},
                "notes": {"type": "array", "items": {"type": "string"}},
            },
            "required": ["confidenceScore", "confidenceExplanation", "notes"],
        },
    },
    "required": ["overview", "surveys", "dataQualityNotes"],
}

ANALYSIS_PROMPT = """You are a research analyst. Summarize the survey data in the input.

Data rules:
- responsesByQuestion is index-aligned: index i in every list is the same respondent.
- An empty string "" is a missing answer; ignore it.
- surveyId tells which questions belong to which survey.
- Use only the provided data. Do not invent numbers or statistics.

Output rules:
- State in the overview how many of the responseCount responses were used.
- Report findings for mcq questions and insights (each with a theme) for short-text questions.
- Mention correlations only when index alignment supports them; otherwise return [].
- Examples must be copied verbatim from responsesByQuestion.
- surveys[].surveyId must be one of the input surveyId values.
- confidenceScore is between 0 and 1 and must reflect sample size and missing answers.
- Return JSON only, matching the provided JSON Schema exactly.
"""


def extract_json_from_text(text: str) -> Optional[dict]:
    if not text:
        return None
    try:
        return json.loads(text)
    except Exception:
        m = re.search(r"\{.*\}", text, re.DOTALL)
        if m:
            try:
                return json.loads(m.group(0))
            except Exception:
                return None
    return None


class GroqAnalyzer:
    """Sends an assembled dataset to the model and returns its structured answer."""

    def __init__(self, client=None, model: str = None, temperature: float = None):
        self._client = client
        self.model = model or config.ANALYSIS_MODEL
        self.temperature = config.ANALYSIS_TEMPERATURE if temperature is None else temperature

    @property
    def client(self):
        if self._client is None:
            self._client = Groq(api_key=config.GROQ_API_KEY)
        return self._client

    def analyze(self, dataset: Dict[str, Any]) -> Dict[str, Any]:
        user_content = "Analyze the following survey data:\n\n" + json.dumps(dataset, ensure_ascii=False, indent=2)
        try:
            resp = self.client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": ANALYSIS_PROMPT},
                    {"role": "user", "content": user_content},
                ],
                temperature=self.temperature,
                seed=42,
                response_format={
                    "type": "json_schema",
                    "json_schema": {
                        "name": "survey_analysis_response",
                        "strict": True,
                        "schema": ANALYSIS_RESPONSE_SCHEMA,
                    },
                },
            )
        except Exception as e:
            raise AnalyzerError(f"Analysis request failed: {e}") from e

        if not resp.choices:
            raise MalformedAnalysisResult("Model returned no choices")
        raw = resp.choices[0].message.content or ""
        parsed = extract_json_from_text(raw)
        if not isinstance(parsed, dict):
            logger.warning("Unparseable analysis output: %s", raw[:200])
            raise MalformedAnalysisResult("Model output is not a JSON object")
        return parsed
