from datetime import datetime
from typing import Any, List, Optional, Union

from pydantic import BaseModel, Field


# ========== Request / response models ==========
class AnalysisRequest(BaseModel):
    # string or list of strings; checked by normalize_survey_ids
    surveyIds: Any = None


class AnalysisCreated(BaseModel):
    message: str = "Analysis started"
    analysisId: str
    status: str
    progress: int
    type: str


class AnalysisSnapshot(BaseModel):
    analysisId: str
    surveyIds: List[str]
    type: str
    status: str
    progress: int
    data: Optional[dict] = None
    createdAt: Optional[datetime] = None
    updatedAt: Optional[datetime] = None


class AnalysisList(BaseModel):
    message: str = "Analyses fetched successfully"
    analyses: List[AnalysisSnapshot]
    count: int


# ========== Model output ==========
class Finding(BaseModel):
    title: str
    description: str


class Insight(BaseModel):
    theme: str
    title: str
    description: str
    examples: List[str] = Field(default_factory=list)


class Correlation(BaseModel):
    description: str
    evidence: str


class SurveySummary(BaseModel):
    surveyId: str
    responseCountUsed: Union[int, float] = 0
    findings: List[Finding] = Field(default_factory=list)
    insights: List[Insight] = Field(default_factory=list)
    correlations: List[Correlation] = Field(default_factory=list)
    caveats: List[str] = Field(default_factory=list)


class DataQualityNotes(BaseModel):
    confidenceScore: float = Field(ge=0, le=1)
    confidenceExplanation: str
    notes: List[str] = Field(default_factory=list)


class AnalysisResult(BaseModel):
    overview: str
    surveys: List[SurveySummary] = Field(default_factory=list)
    dataQualityNotes: DataQualityNotes
