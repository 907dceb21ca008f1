from graph.state import LeadState
from tools.dead_letter import dead_letter_queue
from tools.processing_status import processing_status
from tools.slack import slack_notifier
from loguru import logger


async def notify(state: LeadState) -> LeadState:
    """Post the lead card to the sales channel. Failures never undo the lead."""
    lead_id = state.get("lead_id", "")
    processing_status.update(state.get("correlation_id", ""), 90, "Notifying sales team")

    if not slack_notifier.enabled:
        logger.info("Chat notifications disabled, skipping")
        return state

    try:
        state["notification_ts"] = await slack_notifier.send_lead_notification(state.get("lead", {}))
    except Exception as e:
        error_msg = f"Slack notification failed: {str(e)}"
        logger.error(error_msg)
        state.setdefault("errors", []).append(error_msg)
        await dead_letter_queue.add(
            "chat_notification", {"lead_id": lead_id}, e, request_id=state.get("correlation_id")
        )

    return state
