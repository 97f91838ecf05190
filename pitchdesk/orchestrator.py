"""Evaluation orchestrator: status guard, scoring, persistence, fanout.

Status machine for ``Submission.analysis_status``::

    pending --start--> processing --success--> completed
                       processing --error----> failed
    failed --retry--> pending
    completed --re-evaluate--> pending

Only ``pending`` and ``failed`` rows can start a run.  The transition into
``processing`` is a single conditional UPDATE checked by affected-row count,
so two concurrent triggers cannot both call the model.
"""
from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass
from datetime import UTC, datetime

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from pitchdesk.fanout import EVENT_UPDATE, StatusBroker, get_broker, submission_event
from pitchdesk.materializer import materialize_company
from pitchdesk.models import (
    STATUS_COMPLETED,
    STATUS_FAILED,
    STATUS_PENDING,
    STATUS_PROCESSING,
    TRIGGERABLE_STATUSES,
    Evaluation,
    ScoringPrompt,
    Submission,
)
from pitchdesk.scorer import FallbackScorer, LLMClient, build_scorer, score_submission

log = logging.getLogger(__name__)

CANCELLED_MESSAGE = "Evaluation cancelled"


class SubmissionNotFound(Exception):
    def __init__(self, submission_id: int):
        super().__init__(f"Submission {submission_id} not found")
        self.submission_id = submission_id


class EvaluationFailed(Exception):
    """An evaluation run ended with the submission marked failed."""
    def __init__(self, submission_id: int, message: str):
        super().__init__(message)
        self.submission_id = submission_id
        self.message = message


@dataclass
class EvaluationOutcome:
    """Result of one trigger: a fresh evaluation, or the state that blocked it."""
    submission_id: int
    status: str
    evaluation: Evaluation | None = None
    company_id: int | None = None
    already: str | None = None

    @property
    def started(self) -> bool:
        return self.already is None


def _get_submission(session: Session, submission_id: int) -> Submission:
    submission = session.execute(
        select(Submission).where(Submission.id == submission_id)
    ).scalars().first()
    if submission is None:
        raise SubmissionNotFound(submission_id)
    return submission


def _transition(
    session: Session,
    submission_id: int,
    from_statuses: tuple[str, ...],
    to_status: str,
    **values,
) -> bool:
    """Conditional status update; True when exactly this caller won the row."""
    result = session.execute(
        update(Submission)
        .where(Submission.id == submission_id, Submission.analysis_status.in_(from_statuses))
        .values(analysis_status=to_status, **values)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def _publish(broker: StatusBroker, session: Session, submission_id: int, old_status: str) -> Submission:
    submission = _get_submission(session, submission_id)
    session.refresh(submission)
    broker.publish(submission_event(submission, old_status, EVENT_UPDATE))
    return submission


def get_rubric_prompt(session: Session) -> str | None:
    """Stored rubric prompt, None when unset or blank."""
    row = session.execute(
        select(ScoringPrompt).where(ScoringPrompt.key == "evaluation")
    ).scalars().first()
    if row is None or not row.content.strip():
        return None
    return row.content


def reset_for_retry(
    session: Session,
    submission_id: int,
    allow_completed: bool = False,
    broker: StatusBroker | None = None,
) -> bool:
    """Move a failed (or, for re-evaluation, completed) submission back to pending.

    Clears the stored result and error so ``analysis_result_json`` stays null
    outside ``completed``.  Returns False when the submission is in any other
    state.  Commits.
    """
    broker = broker or get_broker()
    submission = _get_submission(session, submission_id)
    old_status = submission.analysis_status
    from_statuses = (STATUS_FAILED, STATUS_COMPLETED) if allow_completed else (STATUS_FAILED,)
    if not _transition(session, submission_id, from_statuses, STATUS_PENDING,
                       analysis_result_json=None, analysis_error=None):
        session.rollback()
        return False
    session.commit()
    log.info("Submission %s reset %s -> pending", submission_id, old_status)
    _publish(broker, session, submission_id, old_status)
    return True


async def evaluate_submission(
    session: Session,
    submission_id: int,
    scorer: LLMClient | FallbackScorer | None = None,
    broker: StatusBroker | None = None,
) -> EvaluationOutcome:
    """Run one evaluation for *submission_id* (commits).

    Raises SubmissionNotFound for unknown ids and EvaluationFailed after the
    submission has been marked failed.  A submission already processing or
    completed is reported through ``EvaluationOutcome.already`` without
    calling the model.
    """
    broker = broker or get_broker()
    submission = _get_submission(session, submission_id)
    old_status = submission.analysis_status

    if not _transition(session, submission_id, TRIGGERABLE_STATUSES, STATUS_PROCESSING,
                       analysis_error=None):
        session.rollback()
        session.refresh(submission)
        log.info("Submission %s is %s, skipping evaluation", submission_id, submission.analysis_status)
        return EvaluationOutcome(
            submission_id=submission_id,
            status=submission.analysis_status,
            company_id=submission.company_id,
            already=submission.analysis_status,
        )
    session.commit()
    log.info("Submission %s %s -> processing", submission_id, old_status)
    submission = _publish(broker, session, submission_id, old_status)

    try:
        scorer = scorer or build_scorer()
        result = await score_submission(submission, scorer, get_rubric_prompt(session))

        evaluation = result.to_evaluation(submission.id)
        session.add(evaluation)
        session.flush()
        company_id = materialize_company(session, submission, evaluation)

        submission.analysis_status = STATUS_COMPLETED
        submission.analysis_result_json = json.dumps(result.to_payload())
        submission.analysis_error = None
        submission.analyzed_at = datetime.now(UTC)
        session.commit()
    except asyncio.CancelledError:
        # A cancelled run must not strand the row in processing
        session.rollback()
        log.warning("Evaluation cancelled for submission %s", submission_id)
        _mark_failed(session, submission_id, CANCELLED_MESSAGE, broker)
        raise
    except Exception as exc:
        session.rollback()
        message = str(exc) or exc.__class__.__name__
        log.exception("Evaluation failed for submission %s", submission_id)
        _mark_failed(session, submission_id, message, broker)
        raise EvaluationFailed(submission_id, message) from exc

    log.info("Submission %s processing -> completed (company %s, avg %s)",
             submission_id, company_id, evaluation.overall_average)
    _publish(broker, session, submission_id, STATUS_PROCESSING)
    return EvaluationOutcome(
        submission_id=submission_id,
        status=STATUS_COMPLETED,
        evaluation=evaluation,
        company_id=company_id,
    )


def _mark_failed(session: Session, submission_id: int, message: str, broker: StatusBroker) -> None:
    _transition(session, submission_id, (STATUS_PROCESSING,), STATUS_FAILED,
                analysis_error=message, analysis_result_json=None)
    session.commit()
    _publish(broker, session, submission_id, STATUS_PROCESSING)


async def evaluate_many(
    session: Session,
    submission_ids: list[int] | None = None,
    scorer: LLMClient | FallbackScorer | None = None,
    broker: StatusBroker | None = None,
    delay: float = 0.1,
) -> AsyncIterator[dict]:
    """Re-run evaluation for several submissions, yielding progress dicts.

    Failed and completed submissions are reset to pending first; ones already
    processing are skipped.  Ends with a ``complete`` item carrying counts.
    """
    scorer = scorer or build_scorer()
    query = select(Submission.id, Submission.startup_name).order_by(Submission.id)
    if submission_ids:
        query = query.where(Submission.id.in_(submission_ids))
    rows = session.execute(query).all()
    total = len(rows)
    ok = skipped = failed = 0

    for idx, (sub_id, name) in enumerate(rows):
        yield {"type": "progress", "current": idx + 1, "total": total, "name": name}
        try:
            reset_for_retry(session, sub_id, allow_completed=True, broker=broker)
            outcome = await evaluate_submission(session, sub_id, scorer=scorer, broker=broker)
        except (EvaluationFailed, SubmissionNotFound) as exc:
            log.warning("Batch evaluation failed for %s: %s", name, exc)
            failed += 1
        else:
            if outcome.started:
                ok += 1
            else:
                skipped += 1
        await asyncio.sleep(delay)

    yield {"type": "complete", "stats": {"evaluated": ok, "skipped": skipped, "failed": failed}}
