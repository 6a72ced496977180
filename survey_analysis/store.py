from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

from bson import ObjectId
from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.operations import IndexModel

from survey_analysis import config
from survey_analysis.analysis_job import PROCESSING, failed_fields


def as_db_id(value: Any) -> Any:
    # Survey ids are ObjectIds in most documents, uuid strings in older ones.
    if isinstance(value, ObjectId):
        return value
    if isinstance(value, str) and ObjectId.is_valid(value):
        return ObjectId(value)
    return value


class MongoStore:
    """Read surveys/questions/responses and read/write analysis records."""

    def __init__(self, db):
        self.db = db

    @classmethod
    def from_uri(cls, uri: str = None, db_name: str = None) -> "MongoStore":
        client = MongoClient(uri or config.MONGO_URI)
        return cls(client[db_name or config.MONGO_DB_NAME])

    def ensure_indexes(self) -> None:
        self.db.questions.create_indexes([IndexModel([("surveyId", ASCENDING), ("order", ASCENDING)])])
        self.db.responses.create_indexes([IndexModel([("surveyId", ASCENDING), ("userId", ASCENDING)])])
        self.db.analyses.create_indexes([IndexModel([("ownerId", ASCENDING), ("createdAt", DESCENDING)])])

    def ping(self) -> None:
        self.db.command("ping")

    # ---------- survey data ----------
    def find_surveys(self, survey_ids: Sequence[str]) -> List[dict]:
        ids = [as_db_id(s) for s in survey_ids]
        cursor = self.db.surveys.find(
            {"_id": {"$in": ids}},
            {"_id": 1, "title": 1, "description": 1, "createdAt": 1},
        ).sort([("createdAt", ASCENDING), ("_id", ASCENDING)])
        return list(cursor)

    def find_questions(self, survey_ids: Sequence[str]) -> List[dict]:
        ids = [as_db_id(s) for s in survey_ids]
        cursor = self.db.questions.find(
            {"surveyId": {"$in": ids}},
            {"_id": 1, "text": 1, "type": 1, "options": 1, "surveyId": 1, "order": 1},
        ).sort([("order", ASCENDING), ("_id", ASCENDING)])
        return list(cursor)

    def find_responses(self, survey_ids: Sequence[str]) -> List[dict]:
        ids = [as_db_id(s) for s in survey_ids]
        cursor = self.db.responses.find(
            {"surveyId": {"$in": ids}, "isFlaggedSpam": {"$ne": True}},
            {"_id": 1, "surveyId": 1, "userId": 1, "answers": 1, "submittedAt": 1},
        )
        return list(cursor)

    # ---------- analyses ----------
    def create_analysis(self, doc: Dict[str, Any]) -> str:
        doc = dict(doc)
        doc.pop("_id", None)
        doc["ownerId"] = as_db_id(doc.get("ownerId"))
        doc["surveyIds"] = [as_db_id(s) for s in doc.get("surveyIds", [])]
        result = self.db.analyses.insert_one(doc)
        return str(result.inserted_id)

    def update_analysis(self, analysis_id: str, changes: Dict[str, Any]) -> bool:
        """
        Apply changes to a job that is still processing.

        Progress-only updates go through $max so a stale write can never move
        progress backwards. Returns False when the job is already terminal.
        """
        changes = dict(changes)
        if "status" in changes:
            update = {"$set": changes}
        else:
            progress = changes.pop("progress", None)
            update = {"$set": changes}
            if progress is not None:
                update["$max"] = {"progress": progress}
        result = self.db.analyses.update_one(
            {"_id": as_db_id(analysis_id), "status": PROCESSING},
            update,
        )
        return result.matched_count > 0

    def fail_stale_analyses(self, updated_before: datetime, error: str) -> int:
        """Fail every processing record not updated since `updated_before`."""
        changes = dict(failed_fields(error), updatedAt=datetime.utcnow())
        result = self.db.analyses.update_many(
            {"status": PROCESSING, "updatedAt": {"$lt": updated_before}},
            {"$set": changes},
        )
        return result.modified_count

    def get_analysis(self, owner_id: str, analysis_id: str) -> Optional[dict]:
        return self.db.analyses.find_one({"_id": as_db_id(analysis_id), "ownerId": as_db_id(owner_id)})

    def list_analyses(self, owner_id: str) -> List[dict]:
        cursor = self.db.analyses.find({"ownerId": as_db_id(owner_id)}).sort("createdAt", DESCENDING)
        return list(cursor)
