# team_identity/models/team.py
from typing import Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .enums import Source


class TeamRecord(BaseModel):
    """A provider's view of one team, already translated by an adapter."""

    model_config = ConfigDict(frozen=True)  # Snapshots are never mutated

    source: Source
    source_id: str = Field(..., description="Provider-specific team identifier.")
    raw_name: str = Field("", description="Team name exactly as the provider spells it.")
    country: Optional[str] = None
    league: Optional[str] = None

    @field_validator("source_id", mode="before")
    @classmethod
    def _coerce_id(cls, value):
        # Providers mix integer and string ids
        return str(value).strip() if value is not None else value

    @property
    def key(self) -> Tuple[Source, str]:
        return (self.source, self.source_id)


class SourceRef(BaseModel):
    """One provider side of a canonical mapping."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    country: Optional[str] = None

    @classmethod
    def from_record(cls, record: TeamRecord) -> "SourceRef":
        return cls(id=record.source_id, name=record.raw_name, country=record.country)
