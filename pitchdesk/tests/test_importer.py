"""Tests for XLSX import and export."""
from __future__ import annotations

import io

import openpyxl
import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import sessionmaker

from pitchdesk.config import get_settings
from pitchdesk.fanout import EVENT_INSERT, StatusBroker
from pitchdesk.importer import EXPORT_COLUMNS, export_xlsx, import_xlsx
from pitchdesk.models import Base, Evaluation, Submission


@pytest.fixture(autouse=True)
def fresh_settings(monkeypatch):
    monkeypatch.delenv("PITCHDESK_REQUIRE_CONTACT_EMAIL", raising=False)
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture()
def session():
    eng = create_engine("sqlite:///:memory:", connect_args={"check_same_thread": False})
    Base.metadata.create_all(eng)
    SessionLocal = sessionmaker(bind=eng, autoflush=False, expire_on_commit=False)
    sess = SessionLocal()
    try:
        yield sess
    finally:
        sess.close()


def _workbook(tmp_path, rows: list[list]) -> str:
    wb = openpyxl.Workbook()
    ws = wb.active
    for row in rows:
        ws.append(row)
    path = tmp_path / "submissions.xlsx"
    wb.save(path)
    return str(path)


class TestImportXlsx:
    def test_imports_valid_rows_and_skips_invalid(self, tmp_path, session):
        path = _workbook(tmp_path, [
            ["Startup Name", "Email", "Problem Statement", "Solution", "Industry", "Notes"],
            ["Acme", "ceo@acme.io", "Idle forklifts", "", "Logistics", "ignored"],
            ["Beta", None, None, "Smart shelves", None, None],
            [None, None, "No name here", None, None, None],
            ["Gamma", "not-an-email", "Something", None, None, None],
            [None, None, None, None, None, None],
            ["Delta", None, None, None, "Retail", None],
        ])
        result = import_xlsx(path, session, broker=StatusBroker())

        assert result.total_rows == 5
        assert result.imported == 2
        assert result.skipped == 3
        assert len(result.errors) == 3
        assert result.errors[0].startswith("Row 4:")

        rows = session.execute(select(Submission).order_by(Submission.id)).scalars().all()
        assert [r.startup_name for r in rows] == ["Acme", "Beta"]
        assert rows[0].founder_email == "ceo@acme.io"
        assert rows[0].industry == "Logistics"
        assert rows[0].source == "xlsx_import"
        assert rows[0].analysis_status == "pending"
        assert rows[1].stage == "Early Stage"

    @pytest.mark.asyncio
    async def test_publishes_insert_events(self, tmp_path, session):
        broker = StatusBroker()
        path = _workbook(tmp_path, [["Name", "Problem"], ["Acme", "X"]])
        async with broker.subscribe(event_type=EVENT_INSERT) as sub:
            import_xlsx(path, session, broker=broker)
            event = await sub.get(timeout=1)
        assert event.display_name == "Acme"
        assert event.new_status == "pending"

    def test_header_only(self, tmp_path, session):
        result = import_xlsx(_workbook(tmp_path, [["Startup Name", "Solution"]]), session, broker=StatusBroker())
        assert result.total_rows == 0
        assert result.imported == 0


class TestExportXlsx:
    def test_round_trips_through_openpyxl(self, session):
        sub = Submission(startup_name="Acme", problem_statement="X", analysis_status="completed")
        session.add(sub)
        session.flush()
        session.add(Evaluation(submission_id=sub.id, overall_average=13.25))
        session.commit()

        wb = openpyxl.load_workbook(io.BytesIO(export_xlsx(session)))
        ws = wb.active
        rows = list(ws.iter_rows(values_only=True))
        assert list(rows[0]) == list(EXPORT_COLUMNS)
        record = dict(zip(rows[0], rows[1]))
        assert record["startup_name"] == "Acme"
        assert record["analysis_status"] == "completed"
        assert record["overall_average"] == 13.25
        assert len(rows) == 2
