from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from mcp.server.fastmcp import FastMCP
from pydantic import ValidationError

from pitchdesk import services
from pitchdesk.db import init_db, session_scope
from pitchdesk.models import Submission
from pitchdesk.orchestrator import EvaluationFailed, SubmissionNotFound, evaluate_submission, reset_for_retry
from pitchdesk.schemas import SubmissionCreate
from pitchdesk.utils import json_parse

log = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def pitchdesk_lifespan(server: FastMCP) -> AsyncIterator[None]:
    init_db()
    yield


mcp = FastMCP(
    "Pitchdesk",
    instructions=(
        "Pitchdesk collects startup pitch submissions and scores them with a "
        "32-criterion rubric. Start with get_stats() for an overview, then "
        "list_submissions() to browse, submit_startup() to add a pitch and "
        "evaluate_submission_tool(id) to score it."
    ),
    lifespan=pitchdesk_lifespan,
    json_response=True,
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


async def _evaluate(session, submission_id: int) -> dict:
    try:
        outcome = await evaluate_submission(session, submission_id)
    except SubmissionNotFound as exc:
        return {"error": str(exc)}
    except EvaluationFailed as exc:
        return {"error": f"Evaluation failed: {exc.message}", "submission_id": submission_id}
    if outcome.already is not None:
        return {"submission_id": submission_id, "analysis_status": outcome.status,
                "message": f"Submission is already {outcome.already}", "company_id": outcome.company_id}
    ev = outcome.evaluation
    return {
        "submission_id": submission_id,
        "analysis_status": outcome.status,
        "company_id": outcome.company_id,
        "overall_average": ev.overall_average,
        "group_scores": json_parse(ev.group_scores_json, {}),
        "analysis_summary": ev.ai_analysis_summary,
        "recommendations": ev.ai_recommendations,
    }


# ---------------------------------------------------------------------------
# Resource
# ---------------------------------------------------------------------------


@mcp.resource("pitchdesk://overview")
def pitchdesk_overview() -> str:
    """Overview of Pitchdesk: data model, workflow, and statuses."""
    return json.dumps({
        "system": "Pitchdesk: startup pitch intake and rubric evaluation",
        "data_model": {
            "submission": "A startup's answers to the pitch form. Carries analysis_status and the stored result.",
            "evaluation": "One rubric run: 32 integer scores (1-20), group averages, summary, recommendations.",
            "company": "Created from the first successful evaluation of a submission, updated on re-evaluation.",
        },
        "workflow": [
            "1. get_stats() to see submission and company counts.",
            "2. submit_startup(startup_name, problem_statement, ...) to add a pitch.",
            "3. evaluate_submission_tool(id) to score it and materialize its company.",
            "4. retry_submission(id) when an evaluation failed.",
            "5. list_companies() to compare evaluated startups.",
        ],
        "statuses": {
            "pending": "Waiting for evaluation.",
            "processing": "An evaluation is running; further triggers are ignored.",
            "completed": "Evaluated; analysis_result and company_id are set.",
            "failed": "Last evaluation errored; analysis_error explains why. Retry is manual.",
        },
    }, indent=2)


# ---------------------------------------------------------------------------
# Tools: Submissions
# ---------------------------------------------------------------------------


@mcp.tool()
def submit_startup(
    startup_name: str,
    problem_statement: str = "", solution: str = "", target_audience: str = "",
    market_size: str = "", competitors: str = "", unique_value_proposition: str = "",
    revenue_model: str = "", team_members: str = "", team_experience: str = "",
    traction: str = "", customer_validation: str = "", growth_metrics: str = "",
    funding_amount: str = "", founder_name: str = "", founder_email: str = "",
    website: str = "", stage: str = "Early Stage", industry: str = "",
) -> dict:
    """Create a pending startup submission. At least one content field is required."""
    fields = dict(locals())
    try:
        body = SubmissionCreate(**fields)
    except ValidationError as exc:
        return {"error": "; ".join(err["msg"] for err in exc.errors())}
    with session_scope() as session:
        sub = services.create_submission(session, body.model_dump(), source="mcp")
        return services.submission_summary(sub)


@mcp.tool()
def list_submissions(status: str | None = None, limit: int = 50) -> list[dict]:
    """List submissions, newest first.

    Args:
        status: Comma-separated filter from: pending, processing, completed, failed.
        limit: Max results (default 50, max 500).
    """
    with session_scope() as session:
        return services.list_submissions(session, status=status, limit=max(1, min(limit, 500)))


@mcp.tool()
def get_submission(submission_id: int) -> dict:
    """Get a submission with its stored analysis result and evaluation count."""
    with session_scope() as session:
        sub = services.get_entity(session, Submission, submission_id)
        if not sub:
            return {"error": f"Submission {submission_id} not found"}
        return services.submission_detail(sub)


# ---------------------------------------------------------------------------
# Tools: Evaluation
# ---------------------------------------------------------------------------


@mcp.tool()
async def evaluate_submission_tool(submission_id: int) -> dict:
    """Score a pending or failed submission with the rubric and materialize its company."""
    with session_scope() as session:
        return await _evaluate(session, submission_id)


@mcp.tool()
async def retry_submission(submission_id: int) -> dict:
    """Reset a failed submission to pending and evaluate it again."""
    with session_scope() as session:
        try:
            if not reset_for_retry(session, submission_id):
                return {"error": f"Submission {submission_id} is not in failed state"}
        except SubmissionNotFound as exc:
            return {"error": str(exc)}
        return await _evaluate(session, submission_id)


# ---------------------------------------------------------------------------
# Tools: Companies & Stats
# ---------------------------------------------------------------------------


@mcp.tool()
def list_companies() -> list[dict]:
    """List companies created from evaluated submissions, best score first."""
    with session_scope() as session:
        return services.list_companies(session)


@mcp.tool()
def get_stats() -> dict:
    """Get submission counts by status, company count, and average rubric score."""
    with session_scope() as session:
        return services.compute_stats(session)


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def main():
    """Run the Pitchdesk MCP server over stdio."""
    logging.basicConfig(level=logging.WARNING)
    mcp.run()


if __name__ == "__main__":
    main()
