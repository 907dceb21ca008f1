from typing import TypedDict, Optional, List, Dict, Any

class LeadState(TypedDict, total=False):
    """State shape for the background lead enrichment workflow."""
    correlation_id: str
    lead_id: str
    lead: Dict[str, Any]             # lead row (Lead.to_dict) created by the dedup gate
    analysis: Dict[str, Any]         # CompanyAnalysis.to_dict()
    confidence: int                  # 0-100
    persisted: bool
    notification_ts: Optional[str]  # Slack message ts
    errors: List[str]
