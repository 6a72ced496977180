import copy
import logging
import queue
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, List, Optional, Set

from pydantic import ValidationError

from survey_analysis import config
from survey_analysis.analysis_job import FAILED, AnalysisJob, failed_fields
from survey_analysis.app_logging import analysis_context, job_fields
from survey_analysis.dataset import AssembledDataset, assemble_dataset
from survey_analysis.errors import AnalysisInterrupted, InvalidRequest, JobStateError, MalformedAnalysisResult
from survey_analysis.models import AnalysisResult
from survey_analysis.pseudonymizer import restore_survey_ids

logger = logging.getLogger(__name__)

# progress checkpoints while processing
PROGRESS_STARTED = 10
PROGRESS_PREPARED = 20
PROGRESS_RECEIVED = 70
PROGRESS_RESTORED = 90


def normalize_survey_ids(raw: Any) -> List[str]:
    """Accept a single id or a list of ids; anything else is rejected."""
    if raw is None or raw == "":
        raise InvalidRequest("surveyIds are required")
    if isinstance(raw, str):
        ids = [raw]
    elif isinstance(raw, list):
        if len(raw) == 0:
            raise InvalidRequest("surveyIds array cannot be empty")
        ids = raw
    else:
        raise InvalidRequest("surveyIds must be a string or an array of strings")

    cleaned = []
    for s in ids:
        if not isinstance(s, str) or not s.strip():
            raise InvalidRequest("surveyIds must be a string or an array of strings")
        cleaned.append(s.strip())
    return cleaned


@dataclass
class AnalysisTask:
    job: AnalysisJob
    dataset: AssembledDataset


class AnalysisWorkerPool:
    """Runs submitted tasks on daemon threads, one task at a time per thread."""

    def __init__(self, workers: int = None):
        self.workers = workers or config.ANALYSIS_WORKERS
        self._queue: "queue.Queue" = queue.Queue()
        self._threads: List[threading.Thread] = []
        self._lock = threading.Lock()

    def _ensure_started(self) -> None:
        with self._lock:
            if self._threads:
                return
            for i in range(self.workers):
                t = threading.Thread(target=self._loop, name=f"analysis-worker-{i}", daemon=True)
                t.start()
                self._threads.append(t)

    def _loop(self) -> None:
        while True:
            item = self._queue.get()
            try:
                if item is None:
                    return
                fn, task = item
                fn(task)
            except Exception:
                logger.exception("Analysis worker task crashed")
            finally:
                self._queue.task_done()

    def dispatch(self, fn: Callable[[Any], None], task: Any) -> None:
        self._ensure_started()
        self._queue.put((fn, task))

    def _take_pending(self) -> List[Any]:
        pending = []
        while True:
            try:
                item = self._queue.get_nowait()
            except queue.Empty:
                return pending
            self._queue.task_done()
            if item is not None:
                pending.append(item[1])

    def shutdown(self, wait: bool = True, timeout: Optional[float] = None, cancel_pending: bool = False) -> List[Any]:
        """
        Stop the workers.

        With `cancel_pending` the queued tasks are taken off the queue and
        returned instead of run. `timeout` bounds the total wait for the
        threads; a thread still busy after it is left running.
        """
        with self._lock:
            threads, self._threads = self._threads, []
        pending = self._take_pending() if cancel_pending else []
        for _ in threads:
            self._queue.put(None)
        if wait:
            deadline = None if timeout is None else time.monotonic() + timeout
            for t in threads:
                t.join(None if deadline is None else max(0.0, deadline - time.monotonic()))
        return pending


class AnalysisOrchestrator:
    def __init__(self, store, analyzer, dispatcher, strict_tokens: Optional[bool] = None):
        self.store = store
        self.analyzer = analyzer
        self.dispatcher = dispatcher
        self.strict_tokens = config.STRICT_TOKEN_REVERSAL if strict_tokens is None else strict_tokens
        # ids of jobs a worker is currently running
        self._running: Set[str] = set()
        self._lock = threading.Lock()

    # ---------- request path ----------
    def submit(self, owner_id: str, raw_survey_ids: Any) -> AnalysisJob:
        """
        Validate, assemble the dataset and create the job, then hand the model
        call to the dispatcher. Returns as soon as the job is queued.
        """
        survey_ids = normalize_survey_ids(raw_survey_ids)
        dataset = assemble_dataset(self.store, survey_ids)

        job = AnalysisJob.start(owner_id, survey_ids, dataset.pseudonyms.to_id_mapping())
        job.id = self.store.create_analysis(job.to_document())
        logger.info("Analysis created", extra={"analysis_id": job.id, "type": job.type, **job_fields(job)})

        # the worker owns its own copy; only it writes to this job from now on
        try:
            self.dispatcher.dispatch(self.run, AnalysisTask(job=copy.deepcopy(job), dataset=dataset))
        except Exception as e:
            logger.exception("Could not queue analysis %s", job.id)
            self._fail(job, e)
            raise
        return job

    def get(self, owner_id: str, analysis_id: str) -> Optional[AnalysisJob]:
        doc = self.store.get_analysis(owner_id, analysis_id)
        return AnalysisJob.from_document(doc) if doc else None

    def list_for_owner(self, owner_id: str) -> List[AnalysisJob]:
        return [AnalysisJob.from_document(doc) for doc in self.store.list_analyses(owner_id)]

    # ---------- background ----------
    def _persist(self, job: AnalysisJob):
        def write(changes):
            if not self.store.update_analysis(job.id, changes):
                raise JobStateError(f"Analysis {job.id} is no longer processing")
        return write

    def _checkpoint(self, job: AnalysisJob, progress: int) -> None:
        job.advance(progress, persist=self._persist(job))
        logger.info("Analysis progress", extra=job_fields(job))

    def run(self, task: AnalysisTask) -> None:
        """Execute one analysis. Never raises; failures end in the failed state."""
        job = task.job
        with self._lock:
            self._running.add(job.id)
        try:
            with analysis_context(job.id):
                self._execute(job, task.dataset)
        finally:
            with self._lock:
                self._running.discard(job.id)

    def _execute(self, job: AnalysisJob, dataset: AssembledDataset) -> None:
        try:
            self._checkpoint(job, PROGRESS_STARTED)
            payload = dataset.payload()
            self._checkpoint(job, PROGRESS_PREPARED)

            raw = self.analyzer.analyze(payload)
            self._checkpoint(job, PROGRESS_RECEIVED)

            try:
                result = AnalysisResult.model_validate(raw).model_dump()
            except ValidationError as e:
                raise MalformedAnalysisResult(f"Analysis result does not match schema: {e}") from e

            restored = restore_survey_ids(result, dataset.pseudonyms.reverse_surveys, strict=self.strict_tokens)
            self._checkpoint(job, PROGRESS_RESTORED)

            job.mark_ready(restored, persist=self._persist(job))
            logger.info("Analysis completed successfully", extra=job_fields(job))
        except Exception as e:
            logger.exception("Analysis failed")
            self._fail(job, e)

    def _fail(self, job: AnalysisJob, error: Exception) -> None:
        if job.is_terminal:
            return
        try:
            job.mark_failed(f"{type(error).__name__}: {error}", persist=self._persist(job))
            logger.info("Analysis marked failed", extra=job_fields(job))
        except Exception:
            # nothing left to report to; the request already returned
            logger.exception("Could not record failed state")

    # ---------- lifecycle ----------
    def shutdown(self, timeout: Optional[float] = None) -> None:
        """
        Stop background work without leaving jobs in processing.

        Queued jobs are failed right away. Running jobs get `timeout` seconds
        to finish; the ones still running after that are failed in the store,
        and their worker's later writes are rejected.
        """
        timeout = config.ANALYSIS_SHUTDOWN_TIMEOUT if timeout is None else timeout
        stop = getattr(self.dispatcher, "shutdown", None)
        pending = stop(wait=True, timeout=timeout, cancel_pending=True) if stop is not None else []

        for task in pending or []:
            self._fail(task.job, AnalysisInterrupted("Service stopped before the analysis started"))

        with self._lock:
            interrupted = sorted(self._running)
        error = f"{AnalysisInterrupted.__name__}: Service stopped while the analysis was running"
        for analysis_id in interrupted:
            changes = dict(failed_fields(error), updatedAt=datetime.utcnow())
            try:
                if self.store.update_analysis(analysis_id, changes):
                    logger.warning("Analysis interrupted by shutdown", extra={"analysis_id": analysis_id, "status": FAILED})
            except Exception:
                logger.exception("Could not fail interrupted analysis %s", analysis_id)

    def recover_stale(self, now: Optional[datetime] = None) -> int:
        """Fail processing records left behind by an earlier process."""
        now = now or datetime.utcnow()
        cutoff = now - timedelta(minutes=config.STALE_ANALYSIS_MINUTES)
        error = f"{AnalysisInterrupted.__name__}: Service restarted while the analysis was running"
        count = self.store.fail_stale_analyses(cutoff, error)
        if count:
            logger.warning("Failed %d stale analyses", count)
        return count
