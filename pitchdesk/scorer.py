"""Rubric scoring engine: one structured LLM call per submission.

Architecture
------------
Each submission is scored on 32 sub-criteria grouped into seven areas
(problem, solution, market, customers, competition, USP, tech).  Every
sub-criterion is an integer on a 1-20 scale.

The model is forced into a tool / function call whose parameters follow
``EVALUATION_SCHEMA`` so parsing is deterministic.  When a provider still
answers with free text, the text is parsed as JSON and, failing that, parsed a
second time after stripping markdown fences.

Model output is never trusted for arithmetic:

- every score is clamped into ``[SCORE_MIN, SCORE_MAX]``; unparseable values
  become ``SCORE_DEFAULT``
- group averages and ``overall_average`` are recomputed from the clamped scores

Without a provider credential, ``build_scorer`` returns a ``FallbackScorer``
that derives scores from a hash of the submission content, so the rest of the
pipeline runs without any external dependency.
"""
from __future__ import annotations

import hashlib
import json
import logging
import math
import os
import random
from dataclasses import dataclass, field
from typing import Any

from pitchdesk.config import get_settings
from pitchdesk.models import FORM_FIELDS, Evaluation, Submission
from pitchdesk.utils import strip_code_fences

log = logging.getLogger(__name__)

RESULT_SCHEMA_VERSION = 1
RESULT_KIND = "startup_rubric"


class LLMCallError(Exception):
    """LLM call failed or returned unparseable output."""
    def __init__(self, message: str, retryable: bool = False):
        super().__init__(message)
        self.retryable = retryable


# ---------------------------------------------------------------------------
# Rubric
# ---------------------------------------------------------------------------

SCORE_MIN = 1
SCORE_MAX = 20
SCORE_DEFAULT = 10

GROUP_LABELS: dict[str, str] = {
    "problem": "Problem Statement",
    "solution": "Solution",
    "market": "Market Understanding",
    "customers": "Customers",
    "competition": "Competition",
    "usp": "USP",
    "tech": "Tech",
}

# {criterion key: group}; the evaluation column is f"{key}_score"
CRITERIA: dict[str, str] = {
    "existence": "problem", "severity": "problem",
    "frequency": "problem", "unmet_need": "problem",
    "direct_fit": "solution", "differentiation": "solution",
    "feasibility": "solution", "effectiveness": "solution",
    "market_size": "market", "growth_trajectory": "market",
    "timing_readiness": "market", "external_catalysts": "market",
    "first_customers": "customers", "accessibility": "customers",
    "acquisition_approach": "customers", "pain_recognition": "customers",
    "direct_competitors": "competition", "substitutes": "competition",
    "differentiation_vs_players": "competition", "dynamics": "competition",
    "usp_clarity": "usp", "usp_differentiation_strength": "usp",
    "usp_defensibility": "usp", "usp_alignment": "usp",
    "tech_vision_ambition": "tech", "tech_coherence": "tech",
    "tech_alignment": "tech", "tech_realism": "tech",
    "tech_feasibility": "tech", "tech_components": "tech",
    "tech_complexity_awareness": "tech", "tech_roadmap": "tech",
}

EVALUATION_TOOL_NAME = "provide_evaluation"

EVALUATION_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        **{key: {"type": "integer", "minimum": SCORE_MIN, "maximum": SCORE_MAX} for key in CRITERIA},
        "analysis_summary": {"type": "string"},
        "recommendations": {"type": "string"},
    },
    "required": [*CRITERIA, "analysis_summary", "recommendations"],
    "additionalProperties": False,
}

DEFAULT_RUBRIC_PROMPT = """\
You are a rigorous startup evaluator. Given a startup submission (problem \
statement, solution, market details, customers, competitors, USP, team, \
traction, etc.), score it on the following groups and sub-criteria. For each \
sub-criterion return an integer score between 1 and 20.

Scoring groups and sub-criteria:
1) Problem Statement: existence, severity, frequency, unmet_need
2) Solution: direct_fit, differentiation, feasibility, effectiveness
3) Market Understanding: market_size, growth_trajectory, timing_readiness, external_catalysts
4) Customers: first_customers, accessibility, acquisition_approach, pain_recognition
5) Competition: direct_competitors, substitutes, differentiation_vs_players, dynamics
6) USP: usp_clarity, usp_differentiation_strength, usp_defensibility, usp_alignment
7) Tech: tech_vision_ambition, tech_coherence, tech_alignment, tech_realism, \
tech_feasibility, tech_components, tech_complexity_awareness, tech_roadmap

Be conservative: a missing or one-line answer cannot score above 8 on the \
criteria it should cover. analysis_summary explains the main drivers of the \
scores and calls out key risks and strengths. recommendations lists 3-5 \
actionable bullets. Respond only through the provide_evaluation tool and do \
not include any extra fields.
"""

# Registry used by db.py to seed defaults: {key: (label, content)}
DEFAULT_PROMPTS: dict[str, tuple[str, str]] = {
    "evaluation": ("Startup rubric", DEFAULT_RUBRIC_PROMPT),
}


def clamp_score(value: Any) -> int:
    """Coerce a model-provided score into the rubric range.

    Numbers (and numeric strings) are truncated to int and clamped to the
    nearest bound; anything else becomes ``SCORE_DEFAULT``.
    """
    if isinstance(value, bool) or value is None:
        return SCORE_DEFAULT
    if isinstance(value, str):
        value = value.strip()
        try:
            value = float(value)
        except ValueError:
            return SCORE_DEFAULT
    if not isinstance(value, (int, float)):
        return SCORE_DEFAULT
    if isinstance(value, float) and not math.isfinite(value):
        return SCORE_DEFAULT
    return max(SCORE_MIN, min(SCORE_MAX, int(value)))


def parse_structured(text: str) -> dict[str, Any]:
    """Parse model text as a JSON object, retrying once on cleaned text."""
    for attempt, candidate in enumerate((text, strip_code_fences(text))):
        try:
            parsed = json.loads(candidate or "")
        except json.JSONDecodeError:
            if attempt == 0:
                log.warning("Model output is not plain JSON, retrying after stripping fences")
            continue
        if isinstance(parsed, dict):
            return parsed
    raise LLMCallError(f"LLM returned invalid JSON: {(text or '')[:200]}", retryable=False)


# ---------------------------------------------------------------------------
# LLM Client
# ---------------------------------------------------------------------------


class LLMClient:
    """Unified async LLM client supporting Anthropic and OpenAI."""

    def __init__(
        self,
        provider: str | None = None,
        model: str | None = None,
        api_key: str | None = None,
        base_url: str | None = None,
    ):
        self.provider = provider or os.environ.get("LLM_PROVIDER", "anthropic")
        self.model = model or os.environ.get("LLM_MODEL", "")
        self._api_key = api_key
        self._base_url = base_url
        self._client: Any = None
        self._init_client()

    def _init_client(self) -> None:
        if self.provider == "anthropic":
            import anthropic
            self.model = self.model or "claude-haiku-4-5-20251001"
            self._client = anthropic.AsyncAnthropic(
                api_key=self._api_key or os.environ.get("ANTHROPIC_API_KEY")
            )
        elif self.provider in ("openai", "openai_compatible"):
            import openai
            self.model = self.model or "gpt-4o-mini"
            kwargs: dict[str, Any] = {}
            key = self._api_key or os.environ.get("OPENAI_API_KEY")
            if key:
                kwargs["api_key"] = key
            url = self._base_url or os.environ.get("OPENAI_BASE_URL")
            if url:
                kwargs["base_url"] = url
            self._client = openai.AsyncOpenAI(**kwargs)
        else:
            raise ValueError(f"Unknown LLM provider: {self.provider!r}")

    async def call_structured(
        self,
        system: str,
        user: str,
        schema: dict[str, Any] = EVALUATION_SCHEMA,
        tool_name: str = EVALUATION_TOOL_NAME,
    ) -> dict[str, Any]:
        """Force a tool call matching *schema* and return its arguments."""
        description = "Structured startup evaluation across all rubric sub-criteria"
        try:
            if self.provider == "anthropic":
                response = await self._client.messages.create(
                    model=self.model,
                    max_tokens=4096,
                    system=system,
                    messages=[{"role": "user", "content": user}],
                    tools=[{"name": tool_name, "description": description, "input_schema": schema}],
                    tool_choice={"type": "tool", "name": tool_name},
                )
                for block in response.content:
                    if getattr(block, "type", "") == "tool_use":
                        return dict(block.input)
                text = "".join(getattr(b, "text", "") for b in response.content).strip()
            else:
                response = await self._client.chat.completions.create(
                    model=self.model,
                    max_tokens=4096,
                    messages=[
                        {"role": "system", "content": system},
                        {"role": "user", "content": user},
                    ],
                    tools=[{
                        "type": "function",
                        "function": {"name": tool_name, "description": description, "parameters": schema},
                    }],
                    tool_choice={"type": "function", "function": {"name": tool_name}},
                )
                message = response.choices[0].message
                if message.tool_calls:
                    text = message.tool_calls[0].function.arguments or ""
                else:
                    text = message.content or ""
        except LLMCallError:
            raise
        except Exception as exc:
            raise LLMCallError(f"LLM API call failed: {exc}", retryable=True) from exc

        return parse_structured(text)


class FallbackScorer:
    """Deterministic stand-in used when no LLM credential is configured."""

    model = "fallback-deterministic"

    async def call_structured(
        self,
        system: str,
        user: str,
        schema: dict[str, Any] = EVALUATION_SCHEMA,
        tool_name: str = EVALUATION_TOOL_NAME,
    ) -> dict[str, Any]:
        digest = hashlib.sha256(user.encode("utf-8")).digest()
        rng = random.Random(int.from_bytes(digest[:8], "big"))
        args: dict[str, Any] = {key: rng.randint(8, 18) for key in CRITERIA}
        args["analysis_summary"] = (
            "Fallback evaluation (no LLM credential configured). "
            "Scores are derived deterministically from the submission content."
        )
        args["recommendations"] = (
            "Run a small pilot; validate customer pain with interviews; "
            "quantify the market; refine the go-to-market plan."
        )
        return args


def build_scorer() -> LLMClient | FallbackScorer:
    """LLMClient when the provider credential is set, FallbackScorer otherwise."""
    settings = get_settings()
    if not settings.has_llm_credentials():
        log.warning("No credential for LLM provider %r, using deterministic fallback scorer",
                    settings.llm_provider)
        return FallbackScorer()
    return LLMClient(provider=settings.llm_provider, model=settings.llm_model or None)


# ---------------------------------------------------------------------------
# Prompt building
# ---------------------------------------------------------------------------

# Contact details stay out of the prompt
_PROMPT_EXCLUDED = {"founder_email"}


def build_submission_message(submission: Submission) -> str:
    """Serialize the submission's answers verbatim for the user message."""
    content = {
        f: getattr(submission, f, None)
        for f in FORM_FIELDS
        if f not in _PROMPT_EXCLUDED and getattr(submission, f, None)
    }
    return "Submission: " + json.dumps(content, ensure_ascii=False, sort_keys=True)


# ---------------------------------------------------------------------------
# Scoring
# ---------------------------------------------------------------------------


@dataclass
class EvaluationResult:
    """Clamped scores and texts for one submission."""
    scores: dict[str, int]
    group_scores: dict[str, float]
    overall_average: float | None
    analysis_summary: str
    recommendations: str
    llm_model: str
    coerced: list[str] = field(default_factory=list)

    def to_payload(self) -> dict[str, Any]:
        """Versioned tagged union stored on the submission."""
        return {
            "schema_version": RESULT_SCHEMA_VERSION,
            "kind": RESULT_KIND,
            "payload": {
                "scores": dict(self.scores),
                "group_scores": dict(self.group_scores),
                "overall_average": self.overall_average,
                "analysis_summary": self.analysis_summary,
                "recommendations": self.recommendations,
                "llm_model": self.llm_model,
            },
        }

    def to_evaluation(self, submission_id: int) -> Evaluation:
        return Evaluation(
            submission_id=submission_id,
            **{f"{key}_score": value for key, value in self.scores.items()},
            overall_average=self.overall_average,
            group_scores_json=json.dumps(self.group_scores),
            ai_analysis_summary=self.analysis_summary,
            ai_recommendations=self.recommendations,
            llm_model=self.llm_model,
            schema_version=RESULT_SCHEMA_VERSION,
        )


def compute_group_scores(scores: dict[str, int]) -> dict[str, float]:
    grouped: dict[str, list[int]] = {group: [] for group in GROUP_LABELS}
    for key, value in scores.items():
        grouped[CRITERIA[key]].append(value)
    return {g: round(sum(v) / len(v), 1) for g, v in grouped.items() if v}


def compute_overall_average(scores: dict[str, int]) -> float | None:
    if not scores:
        return None
    return round(sum(scores.values()) / len(scores), 2)


def _text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, list):
        return "\n".join(f"- {item}" for item in value)
    return str(value).strip()


def build_result(raw: dict[str, Any], model: str) -> EvaluationResult:
    """Clamp raw model arguments into an EvaluationResult."""
    scores: dict[str, int] = {}
    coerced: list[str] = []
    for key in CRITERIA:
        value = clamp_score(raw.get(key))
        if raw.get(key) != value:
            coerced.append(key)
        scores[key] = value
    if coerced:
        log.warning("Coerced %d score(s) into range: %s", len(coerced), ", ".join(coerced))
    return EvaluationResult(
        scores=scores,
        group_scores=compute_group_scores(scores),
        overall_average=compute_overall_average(scores),
        analysis_summary=_text(raw.get("analysis_summary")),
        recommendations=_text(raw.get("recommendations")),
        llm_model=model,
        coerced=coerced,
    )


async def score_submission(
    submission: Submission,
    scorer: LLMClient | FallbackScorer,
    prompt: str | None = None,
) -> EvaluationResult:
    """Score a submission with one structured call.

    Args:
        submission: The submission to score.
        scorer: LLM client or the deterministic fallback.
        prompt: Optional rubric prompt override (the stored prompt).
            Falls back to DEFAULT_RUBRIC_PROMPT.
    """
    raw = await scorer.call_structured(prompt or DEFAULT_RUBRIC_PROMPT, build_submission_message(submission))
    return build_result(raw, scorer.model)
