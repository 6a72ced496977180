import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Optional

from fastapi import FastAPI, Header, HTTPException
from fastapi.middleware.cors import CORSMiddleware

from survey_analysis import config
from survey_analysis.analysis_job import AnalysisJob
from survey_analysis.analyzer import GroqAnalyzer
from survey_analysis.app_logging import setup_logging
from survey_analysis.errors import InvalidRequest, NoQuestionsFound, NoSurveysFound
from survey_analysis.models import AnalysisCreated, AnalysisList, AnalysisRequest, AnalysisSnapshot
from survey_analysis.orchestrator import AnalysisOrchestrator, AnalysisWorkerPool
from survey_analysis.store import MongoStore

logger = logging.getLogger(__name__)


def _snapshot(job: AnalysisJob) -> AnalysisSnapshot:
    return AnalysisSnapshot(**job.snapshot())


def _require_user(user_id: Optional[str]) -> str:
    # identity is set by the auth layer in front of this service
    if not user_id:
        raise HTTPException(401, "Unauthorized")
    return user_id


def create_app(store=None, analyzer=None, dispatcher=None) -> FastAPI:
    store = store if store is not None else MongoStore.from_uri()
    analyzer = analyzer if analyzer is not None else GroqAnalyzer()
    dispatcher = dispatcher if dispatcher is not None else AnalysisWorkerPool()
    orchestrator = AnalysisOrchestrator(store, analyzer, dispatcher)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        ensure_indexes = getattr(store, "ensure_indexes", None)
        if ensure_indexes is not None:
            try:
                ensure_indexes()
            except Exception as e:
                logger.warning("Could not create indexes: %s", e)
        if hasattr(store, "fail_stale_analyses"):
            try:
                orchestrator.recover_stale()
            except Exception as e:
                logger.warning("Could not fail stale analyses: %s", e)
        yield
        orchestrator.shutdown()

    # ========== APP ==========
    app = FastAPI(title="Survey Analysis API", version="1.0.0", lifespan=lifespan)
    app.add_middleware(CORSMiddleware, allow_origins=config.CORS_ORIGINS, allow_methods=["*"], allow_headers=["*"])
    app.state.orchestrator = orchestrator

    # ========== Routes ==========
    @app.get("/")
    async def root():
        return {"message": "Survey Analysis API", "version": "1.0.0", "endpoints": {"create": "POST /analyses", "status": "GET /analyses/{analysis_id}", "list": "GET /analyses"}}

    @app.get("/health")
    def health_check():
        try:
            store.ping()
            return {"status": "healthy", "database": "connected", "timestamp": datetime.utcnow().isoformat()}
        except Exception as e:
            raise HTTPException(503, f"Service unhealthy: {str(e)}")

    @app.post("/analyses", status_code=202, response_model=AnalysisCreated)
    def create_analysis(req: AnalysisRequest, x_user_id: Optional[str] = Header(default=None)):
        owner_id = _require_user(x_user_id)
        try:
            job = orchestrator.submit(owner_id, req.surveyIds)
        except InvalidRequest as e:
            raise HTTPException(400, str(e))
        except NoSurveysFound as e:
            raise HTTPException(404, str(e))
        except NoQuestionsFound as e:
            raise HTTPException(422, str(e))
        except Exception as e:
            logger.exception("Failed to fetch survey data")
            raise HTTPException(500, f"Failed to fetch survey data from database: {str(e)}")
        return AnalysisCreated(analysisId=job.id, status=job.status, progress=job.progress, type=job.type)

    @app.get("/analyses", response_model=AnalysisList)
    def list_analyses(x_user_id: Optional[str] = Header(default=None)):
        owner_id = _require_user(x_user_id)
        try:
            jobs = orchestrator.list_for_owner(owner_id)
        except Exception as e:
            raise HTTPException(500, f"Error fetching analyses: {str(e)}")
        return AnalysisList(analyses=[_snapshot(j) for j in jobs], count=len(jobs))

    @app.get("/analyses/{analysis_id}", response_model=AnalysisSnapshot)
    def get_analysis_status(analysis_id: str, x_user_id: Optional[str] = Header(default=None)):
        owner_id = _require_user(x_user_id)
        try:
            job = orchestrator.get(owner_id, analysis_id)
        except Exception as e:
            raise HTTPException(500, f"Error fetching analysis: {str(e)}")
        if job is None:
            raise HTTPException(404, "Analysis not found")
        return _snapshot(job)

    return app


setup_logging(config.LOG_LEVEL, config.LOG_JSON)
app = create_app()

if __name__ == "__main__":
    import uvicorn
    uvicorn.run("survey_analysis.main:app", host="0.0.0.0", port=8000, reload=True, log_level="info")
