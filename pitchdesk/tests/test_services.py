"""Tests for shared helpers: utils, config, db, and services."""
from __future__ import annotations

import sqlite3
from pathlib import Path

import pytest
from sqlalchemy import create_engine, inspect as sa_inspect, select
from sqlalchemy.orm import Session, sessionmaker

from pitchdesk import services
from pitchdesk.config import Settings, get_settings
from pitchdesk.fanout import EVENT_INSERT, StatusBroker
from pitchdesk.models import Base, Company, Evaluation, ScoringPrompt, Submission

# ---------------------------------------------------------------------------
# Fixtures: in-memory SQLite database
# ---------------------------------------------------------------------------

@pytest.fixture()
def engine():
    eng = create_engine("sqlite:///:memory:", connect_args={"check_same_thread": False})
    Base.metadata.create_all(eng)
    return eng


@pytest.fixture()
def session(engine):
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    sess = SessionLocal()
    try:
        yield sess
    finally:
        sess.close()


@pytest.fixture()
def db_module(engine):
    """Point pitchdesk.db's module globals at the test engine."""
    import pitchdesk.db as db_mod
    orig_engine, orig_session = db_mod._engine, db_mod._SessionLocal
    db_mod._engine = engine
    db_mod._SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    try:
        yield db_mod
    finally:
        db_mod._engine, db_mod._SessionLocal = orig_engine, orig_session


# =========================================================================
# utils
# =========================================================================

class TestJsonParse:
    def test_valid_json(self):
        from pitchdesk.utils import json_parse
        assert json_parse('{"a": 1}') == {"a": 1}

    def test_invalid_json_default(self):
        from pitchdesk.utils import json_parse
        assert json_parse("not json", []) == []

    def test_invalid_json_no_default(self):
        from pitchdesk.utils import json_parse
        assert json_parse("bad") == {}

    def test_none_with_default(self):
        from pitchdesk.utils import json_parse
        assert json_parse(None, None) is None


class TestStripCodeFences:
    def test_json_fence(self):
        from pitchdesk.utils import strip_code_fences
        assert strip_code_fences('```json\n{"a": 1}\n```') == '{"a": 1}'

    def test_bare_fence(self):
        from pitchdesk.utils import strip_code_fences
        assert strip_code_fences('```\n{"a": 1}\n```') == '{"a": 1}'

    def test_cuts_to_outer_braces(self):
        from pitchdesk.utils import strip_code_fences
        assert strip_code_fences('Sure! {"a": {"b": 2}} Hope this helps.') == '{"a": {"b": 2}}'

    def test_none(self):
        from pitchdesk.utils import strip_code_fences
        assert strip_code_fences(None) == ""


# =========================================================================
# config
# =========================================================================

class TestSettings:
    def test_defaults(self, monkeypatch):
        for name in ("PITCHDESK_POLL_INTERVAL", "PITCHDESK_MAX_POLL_ATTEMPTS",
                     "PITCHDESK_REQUIRE_CONTACT_EMAIL", "LLM_PROVIDER"):
            monkeypatch.delenv(name, raising=False)
        settings = Settings()
        assert settings.poll_interval_seconds == 2.0
        assert settings.max_poll_attempts == 150
        assert settings.require_contact_email is False
        assert settings.llm_provider == "anthropic"

    def test_env_overrides(self, monkeypatch, tmp_path):
        monkeypatch.setenv("PITCHDESK_DB_PATH", str(tmp_path / "x.db"))
        monkeypatch.setenv("PITCHDESK_POLL_INTERVAL", "0.5")
        monkeypatch.setenv("PITCHDESK_MAX_POLL_ATTEMPTS", "not-a-number")
        monkeypatch.setenv("PITCHDESK_REQUIRE_CONTACT_EMAIL", "yes")
        settings = Settings()
        assert settings.database_path == tmp_path / "x.db"
        assert settings.poll_interval_seconds == 0.5
        assert settings.max_poll_attempts == 150
        assert settings.require_contact_email is True

    def test_credentials_follow_provider(self, monkeypatch):
        monkeypatch.setenv("LLM_PROVIDER", "openai_compatible")
        monkeypatch.setenv("OPENAI_API_KEY", "  sk-test  ")
        monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)
        settings = Settings()
        assert settings.llm_api_key() == "sk-test"
        assert settings.has_llm_credentials()
        monkeypatch.setenv("LLM_PROVIDER", "anthropic")
        assert not Settings().has_llm_credentials()

    def test_cached(self):
        get_settings.cache_clear()
        assert get_settings() is get_settings()
        get_settings.cache_clear()


# =========================================================================
# db
# =========================================================================

class TestSessionManagement:
    def test_session_scope(self, db_module):
        with db_module.session_scope() as sess:
            assert isinstance(sess, Session)
            sub = Submission(startup_name="ScopeTest", solution="Y")
            sess.add(sub)
            sess.commit()
            assert sub.id is not None

    def test_session_scope_rollback(self, db_module, engine):
        with pytest.raises(ValueError):
            with db_module.session_scope() as sess:
                sess.add(Submission(startup_name="WillFail", solution="Y"))
                sess.flush()
                raise ValueError("boom")
        with Session(engine) as check:
            assert check.execute(select(Submission)).first() is None

    def test_get_session_requires_init(self):
        import pitchdesk.db as db_mod
        orig = db_mod._SessionLocal
        db_mod._SessionLocal = None
        try:
            with pytest.raises(RuntimeError):
                db_mod.get_session()
        finally:
            db_mod._SessionLocal = orig


class TestInitDb:
    def test_creates_and_seeds(self, tmp_path):
        import pitchdesk.db as db_mod
        path = tmp_path / "fresh" / "pitchdesk.db"
        db_mod.init_db(path)
        try:
            assert path.exists()
            with db_mod.session_scope() as sess:
                prompt = sess.execute(select(ScoringPrompt)).scalars().one()
                assert prompt.key == "evaluation"
                assert "provide_evaluation" in prompt.content
        finally:
            db_mod._engine.dispose()

    def test_adds_late_columns(self, tmp_path):
        import pitchdesk.db as db_mod
        path = tmp_path / "old.db"
        conn = sqlite3.connect(path)
        conn.execute(
            "CREATE TABLE submissions (id INTEGER PRIMARY KEY, startup_name VARCHAR(200) NOT NULL, "
            "analysis_status VARCHAR(20) NOT NULL DEFAULT 'pending', analysis_result_json TEXT, "
            "company_id INTEGER)"
        )
        conn.commit()
        conn.close()

        db_mod.init_db(path)
        try:
            columns = {c["name"] for c in sa_inspect(db_mod._engine).get_columns("submissions")}
            assert {"analysis_error", "analyzed_at", "source"} <= columns
        finally:
            db_mod._engine.dispose()


# =========================================================================
# services
# =========================================================================

class TestCreateSubmission:
    @pytest.mark.asyncio
    async def test_persists_pending_and_publishes(self, session):
        broker = StatusBroker()
        async with broker.subscribe(event_type=EVENT_INSERT) as sub:
            created = services.create_submission(
                session, {"startup_name": "Acme", "problem_statement": "X", "stage": None},
                source="api", broker=broker,
            )
            event = await sub.get(timeout=1)
        assert created.analysis_status == "pending"
        assert created.source == "api"
        assert created.stage == "Early Stage"
        assert event.submission_id == created.id
        assert event.old_status is None


class TestSerialization:
    def test_detail_extends_summary(self, session):
        sub = Submission(startup_name="Acme", problem_statement="X", founder_email="a@b.co")
        session.add(sub)
        session.commit()
        summary = services.submission_summary(sub)
        detail = services.submission_detail(sub)
        assert set(summary) <= set(detail)
        assert detail["founder_email"] == "a@b.co"
        assert detail["analysis_result"] is None
        assert detail["evaluation_count"] == 0
        assert summary["overall_average"] is None

    def test_evaluation_summary_has_all_scores(self, session):
        sub = Submission(startup_name="Acme", problem_statement="X")
        session.add(sub)
        session.flush()
        ev = Evaluation(submission_id=sub.id, overall_average=10.0, group_scores_json='{"tech": 10.0}')
        session.add(ev)
        session.commit()
        data = services.evaluation_summary(ev)
        assert len([k for k in data if k.endswith("_score")]) == 32
        assert data["group_scores"] == {"tech": 10.0}


class TestStats:
    def test_empty_database(self, session):
        stats = services.compute_stats(session)
        assert stats == {
            "total": 0,
            "by_status": {"pending": 0, "processing": 0, "completed": 0, "failed": 0},
            "companies": 0, "evaluations": 0, "average_overall": None,
        }

    def test_counts(self, session):
        a = Submission(startup_name="A", solution="Y", analysis_status="completed")
        b = Submission(startup_name="B", solution="Y", analysis_status="failed")
        session.add_all([a, b])
        session.flush()
        session.add(Evaluation(submission_id=a.id, overall_average=11.0))
        session.add(Company(name="A", submission_id=a.id, overall_score=55.0))
        session.commit()
        stats = services.compute_stats(session)
        assert stats["total"] == 2
        assert stats["by_status"]["failed"] == 1
        assert stats["companies"] == 1
        assert stats["average_overall"] == 11.0


class TestScoringPrompts:
    def test_update_and_list(self, session):
        session.add(ScoringPrompt(key="evaluation", label="Rubric", content="old"))
        session.commit()
        assert services.update_scoring_prompt(session, "evaluation", "new")["content"] == "new"
        assert services.get_scoring_prompts(session)[0]["content"] == "new"
        assert services.update_scoring_prompt(session, "missing", "x") is None


def test_data_dir_is_inside_package():
    from pitchdesk.config import DATA_DIR
    assert DATA_DIR.parent == Path(__file__).resolve().parent.parent
