from typing import Any, Dict, Mapping

from graph.state import LeadState
from tools.processing_status import processing_status
from loguru import logger

CONFIDENCE_WEIGHTS = {
    "has_real_domain": 20,
    "has_registry_data": 35,
    "keyword_match": 15,
    "llm_confident": 30,
}


def confidence_score(factors: Mapping[str, Any], weights: Mapping[str, int] = CONFIDENCE_WEIGHTS) -> int:
    """
    Weighted classification confidence in [0, 100].

    The weights of the true boolean factors are summed, then scaled by
    ``0.5 + 0.5 * data_completeness`` so sparse data halves the score at most.
    """
    completeness = min(1.0, max(0.0, float(factors.get("data_completeness") or 0.0)))
    base = sum(weight for name, weight in weights.items() if factors.get(name))
    score = round(base * (0.5 + 0.5 * completeness))
    return max(0, min(100, int(score)))


def score(state: LeadState) -> LeadState:
    """Turn the enrichment's confidence factors into a confidence score."""
    logger.info(f"Starting scoring for lead: {state.get('lead_id', 'unknown')}")
    processing_status.update(state.get("correlation_id", ""), 60, "Scoring")

    analysis: Dict[str, Any] = state.get("analysis", {})
    factors = analysis.get("confidence_factors", {})
    confidence = confidence_score(factors)

    analysis["confidence"] = confidence
    state["analysis"] = analysis
    state["confidence"] = confidence

    logger.info(f"Confidence {confidence} for {state.get('lead_id')} ({factors})")
    return state
