import re
import uuid
from typing import Optional

LEAD_PREFIX = "lead_"

_LEAD_UUID_RE = re.compile(
    r"^lead_[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$",
    re.IGNORECASE,
)


def generate_lead_uuid() -> str:
    return f"{LEAD_PREFIX}{uuid.uuid4()}"


def is_valid_lead_uuid(lead_id: Optional[str]) -> bool:
    return bool(lead_id) and bool(_LEAD_UUID_RE.match(lead_id))


def extract_uuid(lead_id: str) -> Optional[str]:
    """Return the raw 36-character UUID, or None for a malformed lead id."""
    if not is_valid_lead_uuid(lead_id):
        return None
    return lead_id[len(LEAD_PREFIX):]
