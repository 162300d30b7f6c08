from typing import Optional

from loguru import logger
from pydantic import BaseModel, ConfigDict

from team_identity.models.enums import Source
from team_identity.models.mapping import CanonicalMapping
from team_identity.models.report import CoverageReport
from team_identity.models.team import SourceRef
from team_identity.storage.mapping_store import MappingStore, MappingView


class SourceMatch(BaseModel):
    """A team's identity on one provider, as statistics callers need it."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    confidence: float
    mapping_id: str


class LookupService:
    """Read-only queries for statistics collaborators.

    Every read goes to the store's last committed snapshot, so lookups never
    wait on a running sync. Not-found is ``None``, never an exception.
    """

    def __init__(self, store: MappingStore):
        self.store = store

    @property
    def view(self) -> MappingView:
        return self.store.snapshot()

    def resolve(
        self,
        name: str,
        source_hint: Optional[Source] = None,
        country_hint: Optional[str] = None,
    ) -> Optional[CanonicalMapping]:
        """Finds the mapping for a team name.

        Args:
            name: Raw team name as any provider spells it.
            source_hint: Only consider mappings that know this provider.
            country_hint: Only consider mappings of this country.
        """
        if not name or not str(name).strip():
            return None
        mapping = self.view.get_by_name(name, source=source_hint, country=country_hint)
        if mapping is None:
            logger.debug(f"No mapping found for '{name}' (source={source_hint}, country={country_hint})")
        return mapping

    def get_by_source_id(self, source: Source, source_id: str) -> Optional[CanonicalMapping]:
        return self.view.get_by_source_id(source, str(source_id))

    def find_team(
        self,
        name: str,
        source: Source,
        country_hint: Optional[str] = None,
    ) -> Optional[SourceMatch]:
        """The ``source`` provider's id and name for a team name."""
        mapping = self.resolve(name, source_hint=source, country_hint=country_hint)
        if mapping is None:
            return None
        ref = mapping.ref(source)
        return SourceMatch(
            id=ref.id,
            name=ref.name,
            confidence=mapping.confidence,
            mapping_id=mapping.mapping_id,
        )

    def counterpart(self, source: Source, source_id: str) -> Optional[SourceRef]:
        """The other provider's side of a team, if the pair is linked."""
        mapping = self.get_by_source_id(source, source_id)
        if mapping is None:
            return None
        return mapping.ref(source.other())

    def stats(self) -> CoverageReport:
        return self.view.stats()
