"""Company materialization from a completed evaluation."""
from __future__ import annotations

import logging

from sqlalchemy import select
from sqlalchemy.orm import Session

from pitchdesk.models import Company, Evaluation, Submission
from pitchdesk.scorer import SCORE_MAX

log = logging.getLogger(__name__)


def score_to_percent(overall_average: float | None) -> float:
    """Map a 1-20 rubric average onto the 0-100 company scale."""
    if overall_average is None:
        return 0.0
    return round(overall_average / SCORE_MAX * 100, 1)


def _company_fields(submission: Submission, evaluation: Evaluation) -> dict:
    return {
        "name": submission.startup_name,
        "overall_score": score_to_percent(evaluation.overall_average),
        "industry": submission.industry or "",
        "source": submission.source or "startup_form",
        "scoring_reason": evaluation.ai_analysis_summary or "",
        "evaluation_id": evaluation.id,
    }


def materialize_company(session: Session, submission: Submission, evaluation: Evaluation) -> int:
    """Create or update the Company for *submission*; returns its id.

    Idempotent: with an existing ``company_id`` (or a company already linked to
    the submission) the row is updated in place, never inserted twice.
    Caller must commit.
    """
    company = None
    if submission.company_id is not None:
        company = session.get(Company, submission.company_id)
    if company is None:
        company = session.execute(
            select(Company).where(Company.submission_id == submission.id)
        ).scalars().first()

    fields = _company_fields(submission, evaluation)
    if company is None:
        company = Company(submission_id=submission.id, **fields)
        session.add(company)
        session.flush()
        log.info("Created company %s for submission %s", company.id, submission.id)
    else:
        for key, value in fields.items():
            setattr(company, key, value)
        session.flush()
        log.info("Updated company %s for submission %s", company.id, submission.id)

    submission.company_id = company.id
    return company.id
