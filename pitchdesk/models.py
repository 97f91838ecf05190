from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, Float, ForeignKey, Integer, String, Text, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

STATUS_PENDING = "pending"
STATUS_PROCESSING = "processing"
STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"

ANALYSIS_STATUSES = (STATUS_PENDING, STATUS_PROCESSING, STATUS_COMPLETED, STATUS_FAILED)
# States from which a new evaluation run may start
TRIGGERABLE_STATUSES = (STATUS_PENDING, STATUS_FAILED)

# Answer fields; intake requires at least one of them
CONTENT_FIELDS = (
    "problem_statement", "solution", "target_audience", "market_size", "competitors",
    "unique_value_proposition", "revenue_model", "team_members", "team_experience",
    "traction", "customer_validation", "growth_metrics", "funding_amount",
)
FORM_FIELDS = (
    "startup_name", "founder_name", "founder_email", *CONTENT_FIELDS,
    "website", "stage", "industry",
)


class Base(DeclarativeBase):
    pass


class Submission(Base):
    __tablename__ = "submissions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    startup_name: Mapped[str] = mapped_column(String(200), nullable=False)
    founder_name: Mapped[str] = mapped_column(String(300), default="")
    founder_email: Mapped[str] = mapped_column(String(300), default="")
    problem_statement: Mapped[str] = mapped_column(Text, default="")
    solution: Mapped[str] = mapped_column(Text, default="")
    target_audience: Mapped[str] = mapped_column(Text, default="")
    market_size: Mapped[str] = mapped_column(Text, default="")
    competitors: Mapped[str] = mapped_column(Text, default="")
    unique_value_proposition: Mapped[str] = mapped_column(Text, default="")
    revenue_model: Mapped[str] = mapped_column(Text, default="")
    team_members: Mapped[str] = mapped_column(Text, default="")
    team_experience: Mapped[str] = mapped_column(Text, default="")
    traction: Mapped[str] = mapped_column(Text, default="")
    customer_validation: Mapped[str] = mapped_column(Text, default="")
    growth_metrics: Mapped[str] = mapped_column(Text, default="")
    funding_amount: Mapped[str] = mapped_column(Text, default="")
    website: Mapped[str] = mapped_column(String(500), default="")
    stage: Mapped[str] = mapped_column(String(100), default="Early Stage")
    industry: Mapped[str] = mapped_column(String(200), default="")
    source: Mapped[str] = mapped_column(String(50), default="startup_form")

    analysis_status: Mapped[str] = mapped_column(String(20), default=STATUS_PENDING, nullable=False, index=True)
    analysis_result_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    analysis_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    company_id: Mapped[int | None] = mapped_column(Integer, ForeignKey("companies.id"), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now(), onupdate=func.now())
    analyzed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    evaluations: Mapped[list[Evaluation]] = relationship(
        "Evaluation", back_populates="submission", cascade="all, delete-orphan",
        order_by="Evaluation.id",
    )
    company: Mapped[Company | None] = relationship("Company", foreign_keys=[company_id])


class Evaluation(Base):
    __tablename__ = "evaluations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    submission_id: Mapped[int] = mapped_column(Integer, ForeignKey("submissions.id"), nullable=False, index=True)

    # Problem statement
    existence_score: Mapped[int] = mapped_column(Integer, default=10)
    severity_score: Mapped[int] = mapped_column(Integer, default=10)
    frequency_score: Mapped[int] = mapped_column(Integer, default=10)
    unmet_need_score: Mapped[int] = mapped_column(Integer, default=10)
    # Solution
    direct_fit_score: Mapped[int] = mapped_column(Integer, default=10)
    differentiation_score: Mapped[int] = mapped_column(Integer, default=10)
    feasibility_score: Mapped[int] = mapped_column(Integer, default=10)
    effectiveness_score: Mapped[int] = mapped_column(Integer, default=10)
    # Market understanding
    market_size_score: Mapped[int] = mapped_column(Integer, default=10)
    growth_trajectory_score: Mapped[int] = mapped_column(Integer, default=10)
    timing_readiness_score: Mapped[int] = mapped_column(Integer, default=10)
    external_catalysts_score: Mapped[int] = mapped_column(Integer, default=10)
    # Customers
    first_customers_score: Mapped[int] = mapped_column(Integer, default=10)
    accessibility_score: Mapped[int] = mapped_column(Integer, default=10)
    acquisition_approach_score: Mapped[int] = mapped_column(Integer, default=10)
    pain_recognition_score: Mapped[int] = mapped_column(Integer, default=10)
    # Competition
    direct_competitors_score: Mapped[int] = mapped_column(Integer, default=10)
    substitutes_score: Mapped[int] = mapped_column(Integer, default=10)
    differentiation_vs_players_score: Mapped[int] = mapped_column(Integer, default=10)
    dynamics_score: Mapped[int] = mapped_column(Integer, default=10)
    # USP
    usp_clarity_score: Mapped[int] = mapped_column(Integer, default=10)
    usp_differentiation_strength_score: Mapped[int] = mapped_column(Integer, default=10)
    usp_defensibility_score: Mapped[int] = mapped_column(Integer, default=10)
    usp_alignment_score: Mapped[int] = mapped_column(Integer, default=10)
    # Tech
    tech_vision_ambition_score: Mapped[int] = mapped_column(Integer, default=10)
    tech_coherence_score: Mapped[int] = mapped_column(Integer, default=10)
    tech_alignment_score: Mapped[int] = mapped_column(Integer, default=10)
    tech_realism_score: Mapped[int] = mapped_column(Integer, default=10)
    tech_feasibility_score: Mapped[int] = mapped_column(Integer, default=10)
    tech_components_score: Mapped[int] = mapped_column(Integer, default=10)
    tech_complexity_awareness_score: Mapped[int] = mapped_column(Integer, default=10)
    tech_roadmap_score: Mapped[int] = mapped_column(Integer, default=10)

    overall_average: Mapped[float | None] = mapped_column(Float, nullable=True)
    group_scores_json: Mapped[str] = mapped_column(Text, default="{}")
    ai_analysis_summary: Mapped[str] = mapped_column(Text, default="")
    ai_recommendations: Mapped[str] = mapped_column(Text, default="")
    llm_model: Mapped[str] = mapped_column(String(100), default="")
    schema_version: Mapped[int] = mapped_column(Integer, default=1)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())

    submission: Mapped[Submission] = relationship("Submission", back_populates="evaluations")


class Company(Base):
    __tablename__ = "companies"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    overall_score: Mapped[float] = mapped_column(Float, default=0.0)
    industry: Mapped[str] = mapped_column(String(200), default="")
    source: Mapped[str] = mapped_column(String(50), default="startup_form")
    scoring_reason: Mapped[str] = mapped_column(Text, default="")
    submission_id: Mapped[int] = mapped_column(Integer, unique=True, nullable=False)
    evaluation_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now(), onupdate=func.now())


class ScoringPrompt(Base):
    __tablename__ = "scoring_prompts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    key: Mapped[str] = mapped_column(String(50), unique=True, nullable=False)
    label: Mapped[str] = mapped_column(String(200), default="")
    content: Mapped[str] = mapped_column(Text, default="")
    updated_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now(), onupdate=func.now())
