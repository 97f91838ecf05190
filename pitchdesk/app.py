from __future__ import annotations

import asyncio
import json
import logging
import tempfile
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Generator

from fastapi import BackgroundTasks, Depends, FastAPI, File, HTTPException, Query, Request, UploadFile
from fastapi.responses import JSONResponse, Response, StreamingResponse
from sqlalchemy.orm import Session

from pitchdesk import __version__, services
from pitchdesk.db import get_session, init_db, session_scope
from pitchdesk.fanout import format_sse, get_broker
from pitchdesk.importer import export_xlsx, import_xlsx
from pitchdesk.models import Company, Submission
from pitchdesk.orchestrator import (
    EvaluationFailed,
    SubmissionNotFound,
    evaluate_many,
    evaluate_submission,
    reset_for_retry,
)
from pitchdesk.schemas import (
    BatchEvaluateRequest,
    CompanyOut,
    EvaluateRequest,
    ImportResult,
    ScoringPromptUpdate,
    StatsOut,
    SubmissionCreate,
    SubmissionCreated,
    SubmissionDetail,
    SubmissionOut,
)
from pitchdesk.scorer import FallbackScorer, LLMClient, build_scorer

log = logging.getLogger(__name__)

# Seconds between keep-alive comments on idle event streams
HEARTBEAT_SECONDS = 15.0


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    yield


app = FastAPI(
    title="Pitchdesk",
    version=__version__,
    description=(
        "Startup pitch intake and evaluation API. Submissions are scored by an "
        "LLM rubric, successful evaluations become Company records, and status "
        "changes stream to subscribers. All endpoints return JSON unless noted."
    ),
    lifespan=lifespan,
    openapi_tags=[
        {"name": "Submissions", "description": "Intake and inspection of startup submissions."},
        {"name": "Evaluation", "description": "Trigger, retry, and re-run rubric evaluations."},
        {"name": "Companies", "description": "Companies materialized from completed evaluations."},
        {"name": "Events", "description": "Server-sent status change feed."},
        {"name": "Import", "description": "Bulk XLSX intake and export."},
        {"name": "Stats", "description": "Aggregate statistics."},
        {"name": "Scoring", "description": "Editable rubric prompt."},
    ],
)


# ---------------------------------------------------------------------------
# Dependencies & Helpers
# ---------------------------------------------------------------------------


def db_session() -> Generator[Session, None, None]:
    session = get_session()
    try:
        yield session
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def get_scorer() -> LLMClient | FallbackScorer:
    return build_scorer()


def _get_or_404(session: Session, model, entity_id: int, label: str = "Entity"):
    obj = services.get_entity(session, model, entity_id)
    if not obj:
        raise HTTPException(404, f"{label} not found")
    return obj


async def _run_evaluation(session: Session, submission_id: int, scorer) -> JSONResponse | dict:
    """Shared body of the evaluate/retry/reevaluate routes."""
    try:
        outcome = await evaluate_submission(session, submission_id, scorer=scorer)
    except SubmissionNotFound as exc:
        return JSONResponse({"success": False, "error": str(exc)}, status_code=404)
    except EvaluationFailed as exc:
        return JSONResponse(
            {"success": False, "error": exc.message, "submission_id": submission_id},
            status_code=500,
        )
    if outcome.already == "processing":
        return JSONResponse(
            {"success": True, "message": "Evaluation already in progress",
             "submission_id": submission_id, "analysis_status": outcome.status},
            status_code=202,
        )
    if outcome.already is not None:
        return {"success": True, "message": "Submission already evaluated",
                "submission_id": submission_id, "analysis_status": outcome.status,
                "company_id": outcome.company_id}
    return {
        "success": True,
        "evaluation": services.evaluation_summary(outcome.evaluation),
        "company_id": outcome.company_id,
    }


async def _evaluate_in_background(submission_id: int, scorer) -> None:
    with session_scope() as session:
        try:
            await evaluate_submission(session, submission_id, scorer=scorer)
        except EvaluationFailed as exc:
            # Already persisted on the row and published to subscribers
            log.warning("Background evaluation of submission %s failed: %s", submission_id, exc)


# Strong references to detached batch runs until they finish
_batch_tasks: set[asyncio.Task] = set()


async def _run_batch(submission_ids: list[int] | None, scorer, queue: asyncio.Queue) -> None:
    """Drive a batch to completion, mirroring progress into *queue* (None ends it)."""
    try:
        with session_scope() as session:
            async for item in evaluate_many(session, submission_ids, scorer=scorer):
                queue.put_nowait(item)
    except Exception:
        log.exception("Batch evaluation aborted")
    finally:
        queue.put_nowait(None)


def start_batch(submission_ids: list[int] | None, scorer) -> tuple[asyncio.Task, asyncio.Queue]:
    """Start a batch that keeps running when the progress stream's client goes away."""
    queue: asyncio.Queue = asyncio.Queue()
    task = asyncio.create_task(_run_batch(submission_ids, scorer, queue))
    _batch_tasks.add(task)
    task.add_done_callback(_batch_tasks.discard)
    return task, queue


# ---------------------------------------------------------------------------
# Routes: Submissions
# ---------------------------------------------------------------------------


@app.post("/api/submissions", response_model=SubmissionCreated, status_code=201,
          tags=["Submissions"], summary="Create a submission (optionally start its evaluation)")
async def create_submission(
    body: SubmissionCreate,
    background_tasks: BackgroundTasks,
    evaluate: bool = Query(False, description="Schedule evaluation without waiting for it"),
    session: Session = Depends(db_session),
    scorer=Depends(get_scorer),
):
    sub = services.create_submission(session, body.model_dump())
    if evaluate:
        background_tasks.add_task(_evaluate_in_background, sub.id, scorer)
    return {"success": True, "submission_id": sub.id, "startup_name": sub.startup_name,
            "analysis_status": sub.analysis_status}


@app.get("/api/submissions", response_model=list[SubmissionOut],
         tags=["Submissions"], summary="List submissions, newest first")
async def list_submissions(
    status: str | None = Query(None, description="Comma-separated: pending, processing, completed, failed"),
    limit: int | None = Query(None, ge=1, le=1000),
    session: Session = Depends(db_session),
):
    return services.list_submissions(session, status=status, limit=limit)


@app.get("/api/submissions/{submission_id}", response_model=SubmissionDetail,
         tags=["Submissions"], summary="Get a submission with its stored analysis result")
async def get_submission(submission_id: int, session: Session = Depends(db_session)):
    return services.submission_detail(_get_or_404(session, Submission, submission_id, "Submission"))


@app.get("/api/submissions/{submission_id}/evaluations",
         tags=["Submissions"], summary="Evaluation history for a submission, newest first")
async def list_submission_evaluations(submission_id: int, session: Session = Depends(db_session)):
    return services.submission_evaluations(_get_or_404(session, Submission, submission_id, "Submission"))


# ---------------------------------------------------------------------------
# Routes: Evaluation (batch before parameterized to avoid route shadowing)
# ---------------------------------------------------------------------------


@app.post("/api/evaluate/batch", tags=["Evaluation"],
          summary="Re-run evaluation for several submissions (SSE progress stream)")
async def evaluate_batch(body: BatchEvaluateRequest | None = None, scorer=Depends(get_scorer)):
    _, queue = start_batch(body.submission_ids if body else None, scorer)

    async def stream():
        while True:
            item = await queue.get()
            if item is None:
                break
            yield f"data: {json.dumps(item)}\n\n"

    return StreamingResponse(stream(), media_type="text/event-stream")


@app.post("/api/evaluate", tags=["Evaluation"], summary="Evaluate a submission with the rubric")
async def evaluate(body: EvaluateRequest, session: Session = Depends(db_session),
                   scorer=Depends(get_scorer)):
    return await _run_evaluation(session, body.submission_id, scorer)


@app.post("/api/submissions/{submission_id}/retry", tags=["Evaluation"],
          summary="Retry a failed evaluation")
async def retry_submission(submission_id: int, session: Session = Depends(db_session),
                           scorer=Depends(get_scorer)):
    _get_or_404(session, Submission, submission_id, "Submission")
    if not reset_for_retry(session, submission_id):
        raise HTTPException(409, "Only failed submissions can be retried")
    return await _run_evaluation(session, submission_id, scorer)


@app.post("/api/submissions/{submission_id}/reevaluate", tags=["Evaluation"],
          summary="Re-run evaluation of a completed or failed submission")
async def reevaluate_submission(submission_id: int, session: Session = Depends(db_session),
                                scorer=Depends(get_scorer)):
    _get_or_404(session, Submission, submission_id, "Submission")
    if not reset_for_retry(session, submission_id, allow_completed=True):
        raise HTTPException(409, "Submission is still pending or processing")
    return await _run_evaluation(session, submission_id, scorer)


@app.get("/api/evaluations", tags=["Evaluation"], summary="Latest evaluations across all submissions")
async def list_evaluations(limit: int = Query(100, ge=1, le=500), session: Session = Depends(db_session)):
    return services.latest_evaluations(session, limit=limit)


# ---------------------------------------------------------------------------
# Routes: Companies
# ---------------------------------------------------------------------------


@app.get("/api/companies", response_model=list[CompanyOut],
         tags=["Companies"], summary="List companies, best score first")
async def list_companies(session: Session = Depends(db_session)):
    return services.list_companies(session)


@app.get("/api/companies/{company_id}", response_model=CompanyOut,
         tags=["Companies"], summary="Get a company")
async def get_company(company_id: int, session: Session = Depends(db_session)):
    return services.company_summary(_get_or_404(session, Company, company_id, "Company"))


# ---------------------------------------------------------------------------
# Routes: Events
# ---------------------------------------------------------------------------


@app.get("/api/events", tags=["Events"], summary="Stream status change events (SSE)")
async def stream_events(
    request: Request,
    table: str | None = Query("submissions", description="Table discriminator"),
    event: str | None = Query(None, description="INSERT or UPDATE; all when omitted"),
):
    broker = get_broker()
    event_type = event.upper() if event else None

    async def stream():
        async with broker.subscribe(table=table, event_type=event_type) as sub:
            while not await request.is_disconnected():
                item = await sub.get(timeout=HEARTBEAT_SECONDS)
                if item is None:
                    yield ": keep-alive\n\n"
                    continue
                yield format_sse(item)

    return StreamingResponse(stream(), media_type="text/event-stream")


# ---------------------------------------------------------------------------
# Routes: Import / Export
# ---------------------------------------------------------------------------


@app.post("/api/import", response_model=ImportResult,
          tags=["Import"], summary="Import submissions from an XLSX spreadsheet")
async def import_file(file: UploadFile = File(...), session: Session = Depends(db_session)):
    if not file.filename or not file.filename.endswith(".xlsx"):
        raise HTTPException(400, "Only .xlsx files are supported")
    content = await file.read()
    tmp_path = None
    try:
        with tempfile.NamedTemporaryFile(suffix=".xlsx", delete=False) as f:
            tmp_path = Path(f.name)
            f.write(content)
        return import_xlsx(tmp_path, session)
    finally:
        if tmp_path:
            tmp_path.unlink(missing_ok=True)


@app.get("/api/export", tags=["Import"], summary="Export all submissions as XLSX")
async def export_file(session: Session = Depends(db_session)):
    return Response(
        content=export_xlsx(session),
        media_type="application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
        headers={"Content-Disposition": 'attachment; filename="submissions.xlsx"'},
    )


# ---------------------------------------------------------------------------
# Routes: Scoring Prompts
# ---------------------------------------------------------------------------


@app.get("/api/scoring-prompts", tags=["Scoring"], summary="List rubric prompt definitions")
async def list_scoring_prompts(session: Session = Depends(db_session)):
    return services.get_scoring_prompts(session)


@app.put("/api/scoring-prompts/{key}", tags=["Scoring"], summary="Update a rubric prompt's content")
async def update_scoring_prompt(key: str, body: ScoringPromptUpdate,
                                session: Session = Depends(db_session)):
    result = services.update_scoring_prompt(session, key, body.content)
    if result is None:
        raise HTTPException(404, f"Scoring prompt '{key}' not found")
    return result


# ---------------------------------------------------------------------------
# Routes: Stats
# ---------------------------------------------------------------------------


@app.get("/api/stats", response_model=StatsOut, tags=["Stats"], summary="Submission and company counts")
async def get_stats(session: Session = Depends(db_session)):
    return services.compute_stats(session)


# ---------------------------------------------------------------------------
# Startup
# ---------------------------------------------------------------------------


def main():
    import uvicorn
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    uvicorn.run("pitchdesk.app:app", host="127.0.0.1", port=8001)


if __name__ == "__main__":
    main()
