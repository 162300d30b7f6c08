# team_identity/models/mapping.py
from datetime import datetime
from typing import Any, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from team_identity.utils.misc_utils import countries_conflict, utcnow
from .enums import MappingStatus, Source
from .team import SourceRef


def primary_name_for(source_a: Optional[SourceRef], source_b: Optional[SourceRef]) -> str:
    # Source B feeds the statistics, so its spelling wins once known
    if source_b is not None:
        return source_b.name
    return source_a.name if source_a is not None else ""


class CanonicalMapping(BaseModel):
    """The merged identity of one real-world team across both providers.

    Instances are immutable; the store replaces them through ``evolve`` so a
    published snapshot can never change under a reader.
    """

    model_config = ConfigDict(frozen=True)

    mapping_id: str
    primary_name: str
    source_a: Optional[SourceRef] = None
    source_b: Optional[SourceRef] = None
    country: Optional[str] = None
    league: Optional[str] = None
    variations: List[str] = Field(default_factory=list)
    confidence: float = Field(1.0, ge=0, le=1)
    status: MappingStatus = MappingStatus.STUB
    verified: bool = False
    auto_discovered: bool = True
    country_override: bool = Field(
        False, description="Allows the two sides to report different countries."
    )
    confirmations: int = Field(0, ge=0)
    last_confirmed_cycle: Optional[str] = None
    retired: bool = False
    retired_at: Optional[datetime] = None
    merged_into: Optional[str] = Field(
        None, description="Mapping that absorbed this one; kept so old ids still resolve."
    )
    last_synced_at: datetime = Field(default_factory=utcnow)

    @field_validator("variations", mode="after")
    @classmethod
    def _dedupe_variations(cls, value: List[str]) -> List[str]:
        # Sorted so that the persisted document is deterministic
        return sorted({v for v in value if v and v.strip()})

    @model_validator(mode="after")
    def _check_sides(self) -> "CanonicalMapping":
        if self.source_a is None and self.source_b is None and not self.retired:
            raise ValueError(f"Mapping {self.mapping_id} references no source")
        if (
            self.source_a is not None
            and self.source_b is not None
            and not self.country_override
            and countries_conflict(self.source_a.country, self.source_b.country)
        ):
            raise ValueError(
                f"Mapping {self.mapping_id} links teams from different countries "
                f"({self.source_a.country} / {self.source_b.country}) without override"
            )
        return self

    @property
    def is_linked(self) -> bool:
        """Both providers are known for this team."""
        return self.source_a is not None and self.source_b is not None

    @property
    def is_stub(self) -> bool:
        return not self.is_linked

    @property
    def is_tombstone(self) -> bool:
        """Retired with no provider side left (absorbed or released)."""
        return self.source_a is None and self.source_b is None

    def ref(self, source: Source) -> Optional[SourceRef]:
        return self.source_a if source is Source.A else self.source_b

    def keys(self) -> List[Tuple[Source, str]]:
        keys = []
        if self.source_a is not None:
            keys.append((Source.A, self.source_a.id))
        if self.source_b is not None:
            keys.append((Source.B, self.source_b.id))
        return keys

    def evolve(self, **changes: Any) -> "CanonicalMapping":
        """Returns a validated copy with ``changes`` applied."""
        data = self.model_dump()
        data.update(changes)
        return CanonicalMapping.model_validate(data)

    def content_equals(self, other: "CanonicalMapping") -> bool:
        """Equality ignoring the bookkeeping timestamp."""
        exclude = {"last_synced_at"}
        return self.model_dump(exclude=exclude) == other.model_dump(exclude=exclude)
