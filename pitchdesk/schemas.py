"""Pydantic request/response schemas for the Pitchdesk API."""
from __future__ import annotations

import re
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from pitchdesk.config import get_settings
from pitchdesk.models import CONTENT_FIELDS

NAME_MAX_LENGTH = 200
TEXT_MAX_LENGTH = 5000

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


class SubmissionCreate(BaseModel):
    startup_name: str
    founder_name: str = ""
    founder_email: str = ""
    problem_statement: str = ""
    solution: str = ""
    target_audience: str = ""
    market_size: str = ""
    competitors: str = ""
    unique_value_proposition: str = ""
    revenue_model: str = ""
    team_members: str = ""
    team_experience: str = ""
    traction: str = ""
    customer_validation: str = ""
    growth_metrics: str = ""
    funding_amount: str = ""
    website: str = ""
    stage: str = "Early Stage"
    industry: str = ""

    @field_validator("*", mode="before")
    @classmethod
    def strip_strings(cls, v: Any) -> Any:
        if v is None:
            return ""
        if isinstance(v, (int, float)) and not isinstance(v, bool):
            return str(v)
        return v.strip() if isinstance(v, str) else v

    @field_validator("startup_name")
    @classmethod
    def name_required(cls, v: str) -> str:
        if not v:
            raise ValueError("startup_name is required")
        if len(v) > NAME_MAX_LENGTH:
            raise ValueError(f"startup_name must be at most {NAME_MAX_LENGTH} characters")
        return v

    @field_validator("founder_email")
    @classmethod
    def email_format(cls, v: str) -> str:
        if v and not _EMAIL_RE.match(v):
            raise ValueError("founder_email is not a valid email address")
        return v

    @field_validator("stage")
    @classmethod
    def default_stage(cls, v: str) -> str:
        return v or "Early Stage"

    @model_validator(mode="after")
    def check_content(self) -> SubmissionCreate:
        for name in type(self).model_fields:
            if name != "startup_name" and len(getattr(self, name)) > TEXT_MAX_LENGTH:
                raise ValueError(f"{name} must be at most {TEXT_MAX_LENGTH} characters")
        if not any(getattr(self, f) for f in CONTENT_FIELDS):
            raise ValueError("at least one content field (e.g. problem_statement) is required")
        if get_settings().require_contact_email and not self.founder_email:
            raise ValueError("founder_email is required")
        return self


class SubmissionCreated(BaseModel):
    success: bool = True
    submission_id: int
    startup_name: str
    analysis_status: str


class SubmissionOut(BaseModel):
    id: int
    startup_name: str
    founder_name: str
    stage: str
    industry: str
    source: str
    analysis_status: str
    analysis_error: str | None = None
    company_id: int | None = None
    overall_average: float | None = None
    created_at: str | None = None
    analyzed_at: str | None = None


class SubmissionDetail(SubmissionOut):
    founder_email: str = ""
    problem_statement: str = ""
    solution: str = ""
    target_audience: str = ""
    market_size: str = ""
    competitors: str = ""
    unique_value_proposition: str = ""
    revenue_model: str = ""
    team_members: str = ""
    team_experience: str = ""
    traction: str = ""
    customer_validation: str = ""
    growth_metrics: str = ""
    funding_amount: str = ""
    website: str = ""
    analysis_result: dict[str, Any] | None = None
    evaluation_count: int = 0


class EvaluateRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    submission_id: int = Field(alias="submissionId")


class BatchEvaluateRequest(BaseModel):
    submission_ids: list[int] | None = None


class CompanyOut(BaseModel):
    id: int
    name: str
    overall_score: float
    industry: str
    source: str
    scoring_reason: str
    submission_id: int
    evaluation_id: int | None = None
    created_at: str | None = None
    updated_at: str | None = None


class ImportResult(BaseModel):
    total_rows: int
    imported: int
    skipped: int
    errors: list[str] = []


class StatsOut(BaseModel):
    total: int
    by_status: dict[str, int]
    companies: int
    evaluations: int
    average_overall: float | None = None


class ScoringPromptUpdate(BaseModel):
    content: str
