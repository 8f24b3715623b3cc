"""Review scoring and agent quality rollup."""

from __future__ import annotations

import json
import logging
import math
import re
from dataclasses import dataclass

from mission_control.jobs.models import (
    InvalidJobRequestError,
    ReviewResult,
    ReviewScores,
    RuntimeControls,
)
from mission_control.jobs.repository import JobRepository

logger = logging.getLogger(__name__)

MIN_DIMENSION_SCORE = 1
MAX_DIMENSION_SCORE = 10
_REVIEW_JSON_RE = re.compile(r"\{.*\"completeness\".*\}", re.DOTALL)


@dataclass(slots=True)
class ParsedReview:
    scores: ReviewScores
    feedback: str


class QualityScorer:
    """Apply review scores to a job and feed the owning agent's statistics."""

    def __init__(self, repository: JobRepository, *, rolling_window: int = 20) -> None:
        self.repository = repository
        self.rolling_window = rolling_window

    def score_job(
        self,
        *,
        job_id: str,
        reviewer_agent_id: str | None,
        scores: ReviewScores,
        feedback: str,
        controls: RuntimeControls,
    ) -> ReviewResult:
        validate_scores(scores)
        result = self.repository.insert_review_and_rollup(
            job_id=job_id,
            reviewer_agent_id=reviewer_agent_id,
            scores=scores,
            feedback=feedback,
            threshold=controls.qa_pass_threshold,
            rolling_window=self.rolling_window,
        )
        logger.info(
            "review-scored job=%s total=%d threshold=%d passed=%s",
            job_id,
            result.total,
            controls.qa_pass_threshold,
            result.passed,
        )
        return result


def validate_scores(scores: ReviewScores) -> None:
    for name, value in scores.as_dict().items():
        if isinstance(value, bool) or not isinstance(value, int):
            raise InvalidJobRequestError(f"Score {name} must be an integer, got {value!r}.")
        if not MIN_DIMENSION_SCORE <= value <= MAX_DIMENSION_SCORE:
            raise InvalidJobRequestError(
                f"Score {name} must be within "
                f"{MIN_DIMENSION_SCORE}..{MAX_DIMENSION_SCORE}, got {value}.",
            )


def clamp_score(value: object) -> int:
    """Coerce a reviewer-provided value into the 1..10 range; junk becomes 1."""

    if isinstance(value, bool):
        return MIN_DIMENSION_SCORE
    try:
        number = float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return MIN_DIMENSION_SCORE
    if math.isnan(number):
        return MIN_DIMENSION_SCORE
    if math.isinf(number):
        return MAX_DIMENSION_SCORE if number > 0 else MIN_DIMENSION_SCORE
    return max(MIN_DIMENSION_SCORE, min(MAX_DIMENSION_SCORE, math.floor(number + 0.5)))


def parse_review_output(text: str | None) -> ParsedReview | None:
    """Extract clamped review scores from a reviewer's free-form output."""

    match = _REVIEW_JSON_RE.search(text or "")
    if match is None:
        return None
    try:
        payload = json.loads(match.group(0))
    except json.JSONDecodeError:
        return None
    if not isinstance(payload, dict):
        return None

    # older reviewer prompts name the fourth dimension "revenue_relevance"
    relevance = payload.get("relevance", payload.get("revenue_relevance"))
    scores = ReviewScores(
        completeness=clamp_score(payload.get("completeness")),
        accuracy=clamp_score(payload.get("accuracy")),
        actionability=clamp_score(payload.get("actionability")),
        relevance=clamp_score(relevance),
        evidence=clamp_score(payload.get("evidence")),
    )
    feedback = payload.get("feedback")
    return ParsedReview(scores=scores, feedback=feedback if isinstance(feedback, str) else "")
