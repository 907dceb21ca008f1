"""In-process tracker for background lead processing, keyed by correlation id."""
import time
from collections import OrderedDict
from dataclasses import asdict, dataclass
from typing import Any, Callable, Dict, Optional

from loguru import logger

PENDING = "pending"
PROCESSING = "processing"
COMPLETED = "completed"
FAILED = "failed"


@dataclass
class ProcessingStatus:
    correlation_id: str
    email: str
    company: str
    status: str
    progress: int
    created_at: float
    updated_at: float
    current_step: Optional[str] = None
    completed_at: Optional[float] = None
    lead_id: Optional[str] = None
    industry: Optional[str] = None
    confidence: Optional[int] = None
    error: Optional[str] = None
    duration: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class ProcessingStatusStore:
    """Bounded map of correlation id to status; entries expire after ``ttl_seconds``."""

    def __init__(self, ttl_seconds: int = 3600, max_size: int = 10000, clock: Callable[[], float] = time.time):
        self.ttl_seconds = ttl_seconds
        self.max_size = max_size
        self._clock = clock
        self._statuses: "OrderedDict[str, ProcessingStatus]" = OrderedDict()

    async def start(self, ttl_seconds: Optional[int] = None, max_size: Optional[int] = None) -> None:
        if ttl_seconds is not None:
            self.ttl_seconds = ttl_seconds
        if max_size is not None:
            self.max_size = max_size
        self._statuses.clear()

    async def close(self) -> None:
        self._statuses.clear()

    def __len__(self) -> int:
        self._purge()
        return len(self._statuses)

    def create(self, correlation_id: str, email: str, company: str = "") -> ProcessingStatus:
        self._purge()
        while len(self._statuses) >= self.max_size:
            self._statuses.popitem(last=False)
        now = self._clock()
        status = ProcessingStatus(
            correlation_id=correlation_id,
            email=email,
            company=company,
            status=PENDING,
            progress=0,
            created_at=now,
            updated_at=now,
        )
        self._statuses[correlation_id] = status
        logger.debug(f"Processing status created: {correlation_id} ({email})")
        return status

    def get(self, correlation_id: str) -> Optional[ProcessingStatus]:
        self._purge()
        return self._statuses.get(correlation_id)

    def update(self, correlation_id: str, progress: int, current_step: str) -> None:
        status = self.get(correlation_id)
        if status is None:
            logger.warning(f"Cannot update processing status, not found: {correlation_id}")
            return
        if status.status == PENDING:
            status.status = PROCESSING
        status.progress = progress
        status.current_step = current_step
        status.updated_at = self._clock()

    def complete(self, correlation_id: str, lead_id: Optional[str] = None,
                 industry: Optional[str] = None, confidence: Optional[int] = None) -> None:
        status = self.get(correlation_id)
        if status is None:
            logger.warning(f"Cannot complete processing status, not found: {correlation_id}")
            return
        now = self._clock()
        status.status = COMPLETED
        status.progress = 100
        status.current_step = "Completed"
        status.completed_at = now
        status.updated_at = now
        status.lead_id = lead_id
        status.industry = industry
        status.confidence = confidence
        status.duration = now - status.created_at

    def fail(self, correlation_id: str, error: str) -> None:
        status = self.get(correlation_id)
        if status is None:
            logger.warning(f"Cannot fail processing status, not found: {correlation_id}")
            return
        now = self._clock()
        status.status = FAILED
        status.error = error
        status.updated_at = now
        status.duration = now - status.created_at

    def _purge(self) -> None:
        cutoff = self._clock() - self.ttl_seconds
        for correlation_id in [cid for cid, st in self._statuses.items() if st.created_at < cutoff]:
            del self._statuses[correlation_id]


# Global status store, started and closed by the app lifespan
processing_status = ProcessingStatusStore()
