from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, Field, computed_field

from team_identity.utils.misc_utils import utcnow
from .enums import PartitionStatus
from .outcome import ReviewItem


class PartitionReport(BaseModel):
    """Result of syncing one country partition."""

    country: str
    cycle_id: str
    status: PartitionStatus = PartitionStatus.COMPLETED
    processed: int = 0
    accepted: int = 0  # Mappings created or changed by an accepted outcome
    auto_verified: int = 0
    unchanged: int = 0
    ambiguous: int = 0
    manual_review: int = 0
    rejected: int = 0
    alternates: int = 0
    superseded: int = 0
    confirmed: int = 0
    newly_verified: int = 0
    retired: int = 0
    stubs_created: int = 0
    skipped_verified: int = 0
    review_items: List[ReviewItem] = []
    error: Optional[str] = None
    started_at: datetime = Field(default_factory=utcnow)
    finished_at: Optional[datetime] = None

    @computed_field  # type: ignore[misc]
    @property
    def has_changes(self) -> bool:
        """False for a pass that left the store exactly as it found it."""
        return bool(
            self.accepted
            or self.superseded
            or self.confirmed
            or self.newly_verified
            or self.retired
            or self.stubs_created
        )


class CoverageReport(BaseModel):
    """Aggregate statistics over the active mappings."""

    total: int = 0
    both_sources: int = 0
    source_a_only: int = 0
    source_b_only: int = 0
    verified_count: int = 0
    avg_confidence: float = 0.0  # Over linked mappings only
    by_country: Dict[str, int] = {}
    countries: int = 0
    retired: int = 0


class SyncStatus(BaseModel):
    is_running: bool = False
    last_sync: Optional[datetime] = None
    last_cycle_id: Optional[str] = None
    total_runs: int = 0
    successful_runs: int = 0
    failed_runs: int = 0
    last_error: Optional[str] = None
