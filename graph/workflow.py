"""Background enrichment workflow: enrich -> score -> persist -> notify."""
import time
from typing import Any, Dict, Optional

from langgraph.graph import END, START, StateGraph
from loguru import logger

from db import get_db
from db.repositories import leads as leads_repo
from errors import LeadNotFoundError
from graph.nodes.enrich import enrich
from graph.nodes.notify import notify
from graph.nodes.persist import persist
from graph.nodes.score import score
from graph.state import LeadState
from tools.dead_letter import dead_letter_queue
from tools.processing_status import processing_status


def build_workflow():
    """Build the lead enrichment workflow."""
    workflow = StateGraph(LeadState)

    workflow.add_node("enrich", enrich)
    workflow.add_node("score", score)
    workflow.add_node("persist", persist)
    workflow.add_node("notify", notify)

    workflow.add_edge(START, "enrich")
    workflow.add_edge("enrich", "score")
    workflow.add_edge("score", "persist")

    # A lead that could not be saved is never announced
    def after_persist(state: LeadState) -> str:
        if state.get("persisted"):
            return "notify"
        logger.warning(f"Skipping notification for unsaved lead: {state.get('lead_id')}")
        return "end"

    workflow.add_conditional_edges("persist", after_persist, {"notify": "notify", "end": END})
    workflow.add_edge("notify", END)

    return workflow.compile()


lead_graph = build_workflow()


async def process_lead(lead: Dict[str, Any], correlation_id: str) -> LeadState:
    """
    Run the enrichment workflow for a freshly created lead and record the outcome
    in the processing-status store.

    Never raises: unexpected failures are dead-lettered and marked as failed.
    """
    start_time = time.time()
    lead_id = lead.get("id", "")
    initial_state: LeadState = {
        "correlation_id": correlation_id,
        "lead_id": lead_id,
        "lead": lead,
        "errors": [],
    }
    processing_status.update(correlation_id, 10, "Starting processing")
    logger.info(f"Background processing started: {correlation_id} ({lead.get('email')})")

    try:
        result = await lead_graph.ainvoke(initial_state)
    except Exception as e:
        logger.exception(f"Background processing crashed for {lead_id}: {e}")
        processing_status.fail(correlation_id, str(e))
        await dead_letter_queue.add("lead_persist", {"lead_id": lead_id}, e, request_id=correlation_id)
        return {**initial_state, "persisted": False, "errors": [str(e)]}

    if result.get("persisted"):
        processing_status.complete(
            correlation_id,
            lead_id=lead_id,
            industry=result.get("analysis", {}).get("industry"),
            confidence=result.get("confidence"),
        )
    else:
        errors = result.get("errors") or ["Lead could not be saved"]
        processing_status.fail(correlation_id, errors[-1])

    logger.info(f"Background processing finished in {time.time() - start_time:.2f}s: {lead_id}")
    return result


async def reprocess_lead(lead_id: str, correlation_id: Optional[str] = None) -> LeadState:
    """Re-run the workflow for an existing lead (dead-letter replay)."""
    async with get_db() as db:
        lead = await leads_repo.get_lead(db, lead_id)
        if lead is None:
            raise LeadNotFoundError(f"Lead not found: {lead_id}")
        lead_data = lead.to_dict()
    correlation_id = correlation_id or f"retry_{lead_id}"
    processing_status.create(correlation_id, lead_data["email"], lead_data.get("company") or "")
    return await process_lead(lead_data, correlation_id)
