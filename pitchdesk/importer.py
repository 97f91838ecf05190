from __future__ import annotations

import io
import logging
from pathlib import Path

import openpyxl
from pydantic import ValidationError
from sqlalchemy import select
from sqlalchemy.orm import Session

from pitchdesk.fanout import EVENT_INSERT, StatusBroker, get_broker, submission_event
from pitchdesk.models import FORM_FIELDS, Submission
from pitchdesk.schemas import ImportResult, SubmissionCreate

log = logging.getLogger(__name__)

# Header spellings seen in exported form sheets -> form field
_HEADER_ALIASES = {
    "name": "startup_name",
    "startup": "startup_name",
    "company": "startup_name",
    "founder": "founder_name",
    "email": "founder_email",
    "contact_email": "founder_email",
    "problem": "problem_statement",
    "usp": "unique_value_proposition",
    "team": "team_members",
    "funding": "funding_amount",
}

EXPORT_COLUMNS = (
    "id", *FORM_FIELDS, "source", "analysis_status", "analysis_error",
    "company_id", "overall_average", "created_at", "analyzed_at",
)


def _s(value: object) -> str:
    """Safely coerce cell value to stripped string."""
    if value is None:
        return ""
    return str(value).strip()


def _normalize_header(value: object) -> str:
    key = _s(value).casefold().replace("-", " ").replace("/", " ")
    key = "_".join(key.split())
    return _HEADER_ALIASES.get(key, key)


def _parse_rows(ws) -> tuple[list[tuple[int, dict]], int]:
    """Return ([(sheet row number, {field: value})], total data rows)."""
    rows = ws.iter_rows(values_only=True)
    header = next(rows, None)
    if not header:
        return [], 0
    columns = [_normalize_header(h) for h in header]
    out: list[tuple[int, dict]] = []
    total = 0
    for row_no, row in enumerate(rows, start=2):
        if not row or not any(_s(v) for v in row):
            continue
        total += 1
        entry = {
            col: _s(value)
            for col, value in zip(columns, row)
            if col in FORM_FIELDS
        }
        out.append((row_no, entry))
    return out, total


def import_xlsx(
    file_path: str | Path,
    session: Session,
    broker: StatusBroker | None = None,
) -> ImportResult:
    """Import one submission per row from the first sheet; invalid rows are skipped."""
    wb = openpyxl.load_workbook(Path(file_path), read_only=True, data_only=True)
    try:
        parsed, total = _parse_rows(wb.worksheets[0]) if wb.worksheets else ([], 0)
    finally:
        wb.close()

    created: list[Submission] = []
    errors: list[str] = []
    for row_no, data in parsed:
        try:
            body = SubmissionCreate(**data)
        except ValidationError as exc:
            reason = "; ".join(err["msg"] for err in exc.errors())
            errors.append(f"Row {row_no}: {reason}")
            continue
        sub = Submission(source="xlsx_import", **body.model_dump())
        session.add(sub)
        created.append(sub)

    session.commit()
    broker = broker or get_broker()
    for sub in created:
        broker.publish(submission_event(sub, None, EVENT_INSERT))

    log.info("Imported %d submission(s) from %s, skipped %d", len(created), Path(file_path).name, len(errors))
    return ImportResult(
        total_rows=total,
        imported=len(created),
        skipped=len(errors),
        errors=errors,
    )


def export_xlsx(session: Session) -> bytes:
    """Render all submissions (with their latest overall average) as an XLSX workbook."""
    wb = openpyxl.Workbook()
    ws = wb.active
    ws.title = "Submissions"
    ws.append(list(EXPORT_COLUMNS))
    for sub in session.execute(select(Submission).order_by(Submission.id)).scalars().all():
        latest = sub.evaluations[-1] if sub.evaluations else None
        values = {
            **{f: getattr(sub, f) for f in EXPORT_COLUMNS if hasattr(Submission, f)},
            "overall_average": latest.overall_average if latest else None,
            "created_at": sub.created_at.isoformat() if sub.created_at else None,
            "analyzed_at": sub.analyzed_at.isoformat() if sub.analyzed_at else None,
        }
        ws.append([values.get(col) for col in EXPORT_COLUMNS])
    buf = io.BytesIO()
    wb.save(buf)
    return buf.getvalue()
