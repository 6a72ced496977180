import copy
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from survey_analysis.errors import JobStateError

PROCESSING = "processing"
READY = "ready"
FAILED = "failed"
TERMINAL_STATES = {READY, FAILED}

SINGLE = "single"
MULTI = "multi"

PLACEHOLDER_DATA = {
    "overview": "Analysis in progress...",
    "surveys": [],
    "dataQualityNotes": {
        "confidenceScore": 0,
        "confidenceExplanation": "Analysis pending completion...",
        "notes": [],
    },
}


_FIELDS = {
    "status": "status",
    "progress": "progress",
    "data": "data",
    "error": "error",
    "updatedAt": "updated_at",
}


def analysis_type_for(survey_ids: List[str]) -> str:
    return SINGLE if len(survey_ids) == 1 else MULTI


def failed_fields(error: Optional[str]) -> Dict[str, Any]:
    return {"status": FAILED, "progress": 0, "error": error}


@dataclass
class AnalysisJob:
    """
    Lifecycle of one analysis request.

    processing -> ready | failed. Progress only moves forward while
    processing; a terminal job never changes again. Each mutating method
    returns the fields that changed; pass `persist` to write them first.
    """
    owner_id: str
    survey_ids: List[str]
    type: str
    status: str = PROCESSING
    progress: int = 0
    data: Dict[str, Any] = field(default_factory=lambda: copy.deepcopy(PLACEHOLDER_DATA))
    id_mapping: Dict[str, Dict[str, str]] = field(default_factory=dict)
    error: Optional[str] = None
    id: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def start(cls, owner_id: str, survey_ids: List[str], id_mapping: Optional[dict] = None) -> "AnalysisJob":
        now = datetime.utcnow()
        return cls(
            owner_id=owner_id,
            survey_ids=list(survey_ids),
            type=analysis_type_for(survey_ids),
            id_mapping=id_mapping or {},
            created_at=now,
            updated_at=now,
        )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATES

    def _ensure_processing(self, action: str) -> None:
        if self.status != PROCESSING:
            raise JobStateError(f"Cannot {action} analysis {self.id} in state '{self.status}'")

    def _apply(self, changes: Dict[str, Any], persist: Optional[Callable[[Dict[str, Any]], None]]) -> Dict[str, Any]:
        # local state changes only after the store accepted the write
        changes["updatedAt"] = datetime.utcnow()
        if persist is not None:
            persist(changes)
        for key, value in changes.items():
            setattr(self, _FIELDS[key], value)
        return changes

    def advance(self, progress: int, persist=None) -> Dict[str, Any]:
        self._ensure_processing("advance")
        if not 0 <= progress <= 100:
            raise JobStateError(f"Progress must be within 0..100, got {progress}")
        if progress < self.progress:
            raise JobStateError(f"Progress cannot go back from {self.progress} to {progress}")
        return self._apply({"progress": progress}, persist)

    def mark_ready(self, data: Dict[str, Any], persist=None) -> Dict[str, Any]:
        self._ensure_processing("complete")
        return self._apply({"status": READY, "progress": 100, "data": data}, persist)

    def mark_failed(self, error: Optional[str] = None, persist=None) -> Dict[str, Any]:
        # data keeps the placeholder
        self._ensure_processing("fail")
        return self._apply(failed_fields(error), persist)

    def snapshot(self) -> Dict[str, Any]:
        # data is only trustworthy once ready
        return {
            "analysisId": self.id,
            "surveyIds": list(self.survey_ids),
            "type": self.type,
            "status": self.status,
            "progress": self.progress,
            "data": self.data if self.status == READY else None,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }

    def to_document(self) -> Dict[str, Any]:
        doc = {
            "ownerId": self.owner_id,
            "surveyIds": list(self.survey_ids),
            "type": self.type,
            "status": self.status,
            "progress": self.progress,
            "idMapping": self.id_mapping,
            "data": self.data,
            "error": self.error,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }
        if self.id is not None:
            doc["_id"] = self.id
        return doc

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> "AnalysisJob":
        return cls(
            id=str(doc["_id"]) if doc.get("_id") is not None else None,
            owner_id=str(doc.get("ownerId")),
            survey_ids=[str(s) for s in doc.get("surveyIds", [])],
            type=doc.get("type") or analysis_type_for(doc.get("surveyIds", [])),
            status=doc.get("status", PROCESSING),
            progress=int(doc.get("progress", 0)),
            data=doc.get("data") or copy.deepcopy(PLACEHOLDER_DATA),
            id_mapping=doc.get("idMapping") or {},
            error=doc.get("error"),
            created_at=doc.get("createdAt"),
            updated_at=doc.get("updatedAt"),
        )
