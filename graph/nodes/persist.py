from graph.state import LeadState
from db import get_db
from db.repositories import leads as leads_repo
from tools.dead_letter import dead_letter_queue
from tools.processing_status import processing_status
from tools.retry import with_retry
from config import get_settings
from loguru import logger


async def persist(state: LeadState) -> LeadState:
    """Write the analysis and confidence onto the lead row."""
    lead_id = state.get("lead_id", "")
    logger.info(f"Persisting enrichment for lead: {lead_id}")
    processing_status.update(state.get("correlation_id", ""), 75, "Saving lead")

    fields = dict(state.get("analysis", {}))
    fields["confidence"] = state.get("confidence", 0)

    async def write():
        async with get_db() as db:
            lead = await leads_repo.update_enrichment(db, lead_id, fields)
            return lead.to_dict()

    settings = get_settings()
    try:
        state["lead"] = await with_retry(
            write,
            attempts=settings.retry_attempts,
            base_delay=settings.retry_base_delay_seconds,
            operation=f"persist {lead_id}",
        )
        state["persisted"] = True
        logger.info(f"Enrichment saved for {lead_id}")
    except Exception as e:
        error_msg = f"Persist failed: {str(e)}"
        logger.error(error_msg)
        state.setdefault("errors", []).append(error_msg)
        state["persisted"] = False
        await dead_letter_queue.add(
            "lead_persist", {"lead_id": lead_id}, e, request_id=state.get("correlation_id")
        )

    return state
