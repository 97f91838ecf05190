"""Shared business logic for Pitchdesk API and MCP server."""
from __future__ import annotations

import logging
from collections import Counter
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from pitchdesk.fanout import EVENT_INSERT, StatusBroker, get_broker, submission_event
from pitchdesk.models import (
    ANALYSIS_STATUSES,
    CONTENT_FIELDS,
    FORM_FIELDS,
    STATUS_PENDING,
    Company,
    Evaluation,
    ScoringPrompt,
    Submission,
)
from pitchdesk.scorer import CRITERIA
from pitchdesk.utils import json_parse

log = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Shared field tuples
# ---------------------------------------------------------------------------

SCORE_COLUMNS = tuple(f"{key}_score" for key in CRITERIA)

SUMMARY_FIELDS = (
    "id", "startup_name", "founder_name", "stage", "industry", "source",
    "analysis_status", "analysis_error", "company_id",
)

DETAIL_FIELDS = ("founder_email", *CONTENT_FIELDS, "website")

COMPANY_FIELDS = (
    "id", "name", "overall_score", "industry", "source", "scoring_reason",
    "submission_id", "evaluation_id",
)

# ---------------------------------------------------------------------------
# Serialization helpers
# ---------------------------------------------------------------------------


def _iso(value) -> str | None:
    return value.isoformat() if value else None


def latest_evaluation(sub: Submission) -> Evaluation | None:
    return sub.evaluations[-1] if sub.evaluations else None


def submission_summary(sub: Submission) -> dict:
    latest = latest_evaluation(sub)
    return {
        **{f: getattr(sub, f) for f in SUMMARY_FIELDS},
        "overall_average": latest.overall_average if latest else None,
        "created_at": _iso(sub.created_at),
        "analyzed_at": _iso(sub.analyzed_at),
    }


def submission_detail(sub: Submission) -> dict:
    base = submission_summary(sub)
    base.update({f: getattr(sub, f) or "" for f in DETAIL_FIELDS})
    base["analysis_result"] = json_parse(sub.analysis_result_json, None)
    base["evaluation_count"] = len(sub.evaluations)
    return base


def evaluation_summary(ev: Evaluation) -> dict:
    return {
        "id": ev.id,
        "submission_id": ev.submission_id,
        **{col: getattr(ev, col) for col in SCORE_COLUMNS},
        "group_scores": json_parse(ev.group_scores_json, {}),
        "overall_average": ev.overall_average,
        "ai_analysis_summary": ev.ai_analysis_summary,
        "ai_recommendations": ev.ai_recommendations,
        "llm_model": ev.llm_model,
        "schema_version": ev.schema_version,
        "created_at": _iso(ev.created_at),
    }


def company_summary(company: Company) -> dict:
    return {
        **{f: getattr(company, f) for f in COMPANY_FIELDS},
        "created_at": _iso(company.created_at),
        "updated_at": _iso(company.updated_at),
    }


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------


def get_entity(session: Session, model, entity_id: int):
    return session.execute(select(model).where(model.id == entity_id)).scalars().first()


def list_submissions(session: Session, status: str | None = None, limit: int | None = None) -> list[dict]:
    """Newest first, optionally filtered by comma-separated statuses."""
    query = select(Submission).order_by(Submission.id.desc())
    if status:
        statuses = [s.strip().lower() for s in status.split(",") if s.strip()]
        query = query.where(Submission.analysis_status.in_(statuses))
    if limit:
        query = query.limit(limit)
    return [submission_summary(s) for s in session.execute(query).scalars().all()]


def submission_evaluations(sub: Submission) -> list[dict]:
    return [evaluation_summary(ev) for ev in reversed(sub.evaluations)]


def latest_evaluations(session: Session, limit: int = 100) -> list[dict]:
    rows = session.execute(
        select(Evaluation).order_by(Evaluation.id.desc()).limit(limit)
    ).scalars().all()
    return [evaluation_summary(ev) for ev in rows]


def list_companies(session: Session) -> list[dict]:
    rows = session.execute(
        select(Company).order_by(Company.overall_score.desc(), Company.id)
    ).scalars().all()
    return [company_summary(c) for c in rows]


def compute_stats(session: Session) -> dict:
    by_status: Counter[str] = Counter({s: 0 for s in ANALYSIS_STATUSES})
    for status, count in session.execute(
        select(Submission.analysis_status, func.count()).group_by(Submission.analysis_status)
    ).all():
        by_status[status] += count
    companies = session.execute(select(func.count(Company.id))).scalar() or 0
    evaluations = session.execute(select(func.count(Evaluation.id))).scalar() or 0
    average = session.execute(select(func.avg(Evaluation.overall_average))).scalar()
    return {
        "total": sum(by_status.values()),
        "by_status": dict(by_status),
        "companies": companies,
        "evaluations": evaluations,
        "average_overall": round(average, 2) if average is not None else None,
    }


# ---------------------------------------------------------------------------
# Mutation helpers
# ---------------------------------------------------------------------------


def apply_updates(obj, updates: dict[str, Any], fields: tuple[str, ...]) -> None:
    """Apply non-None values from updates dict to an ORM object."""
    for field in fields:
        val = updates.get(field)
        if val is not None:
            setattr(obj, field, val)


def create_submission(
    session: Session,
    data: dict[str, Any],
    source: str = "startup_form",
    broker: StatusBroker | None = None,
) -> Submission:
    """Persist a validated submission as ``pending`` and publish an INSERT event (commits)."""
    sub = Submission(source=source, analysis_status=STATUS_PENDING)
    apply_updates(sub, data, FORM_FIELDS)
    session.add(sub)
    session.commit()
    session.refresh(sub)
    log.info("Created submission %s (%s) from %s", sub.id, sub.startup_name, source)
    (broker or get_broker()).publish(submission_event(sub, None, EVENT_INSERT))
    return sub


def get_scoring_prompts(session: Session) -> list[dict]:
    rows = session.execute(select(ScoringPrompt).order_by(ScoringPrompt.key)).scalars().all()
    return [
        {"key": p.key, "label": p.label, "content": p.content,
         "updated_at": _iso(p.updated_at)}
        for p in rows
    ]


def update_scoring_prompt(session: Session, key: str, content: str) -> dict | None:
    prompt = session.execute(
        select(ScoringPrompt).where(ScoringPrompt.key == key)
    ).scalars().first()
    if prompt is None:
        return None
    prompt.content = content
    session.commit()
    session.refresh(prompt)
    log.info("Updated scoring prompt %s", key)
    return {"key": prompt.key, "label": prompt.label, "content": prompt.content,
            "updated_at": _iso(prompt.updated_at)}
