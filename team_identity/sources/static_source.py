# team_identity/sources/static_source.py
import json
from collections import defaultdict
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Set, Union

from loguru import logger

from team_identity.errors import SourceUnavailable
from team_identity.models.enums import Source
from team_identity.models.team import TeamRecord
from team_identity.sources.base_source import TeamSource
from team_identity.utils.misc_utils import country_key


class StaticTeamSource(TeamSource):
    """Serves a fixed list of TeamRecords, grouped by country.

    Countries listed in ``unavailable`` raise SourceUnavailable, which lets
    tests and dry runs reproduce provider outages.
    """

    def __init__(
        self,
        source: Source,
        records: Iterable[TeamRecord] = (),
        unavailable: Optional[Iterable[str]] = None,
    ):
        self.source = source
        self.unavailable: Set[str] = {country_key(c) for c in (unavailable or [])}
        self._by_country: Dict[Optional[str], List[TeamRecord]] = defaultdict(list)
        self._country_names: Dict[Optional[str], str] = {}
        for record in records:
            self.add(record)

    def add(self, record: TeamRecord) -> None:
        if record.source is not self.source:
            raise ValueError(
                f"Record {record.source_id} belongs to source {record.source.value}, not {self.source.value}"
            )
        key = country_key(record.country)
        self._by_country[key].append(record)
        if record.country:
            self._country_names.setdefault(key, record.country)

    def set_records(self, records: Iterable[TeamRecord]) -> None:
        self._by_country.clear()
        self._country_names.clear()
        for record in records:
            self.add(record)

    async def fetch_teams(self, country: str) -> List[TeamRecord]:
        key = country_key(country)
        if key in self.unavailable:
            raise SourceUnavailable(
                f"Source {self.source.value} unavailable for {country}",
                source=self.source,
                country=country,
            )
        return list(self._by_country.get(key, []))

    async def list_countries(self) -> List[str]:
        return sorted(self._country_names.values())

    @classmethod
    def from_json_file(cls, source: Source, path: Union[str, Path]) -> "StaticTeamSource":
        """Loads records from a JSON array of {source_id|id, raw_name|name, country, league}."""
        with open(path, "r", encoding="utf-8") as f:
            items = json.load(f)

        records = []
        for item in items:
            records.append(
                TeamRecord(
                    source=source,
                    source_id=item.get("source_id", item.get("id")),
                    raw_name=item.get("raw_name", item.get("name", "")),
                    country=item.get("country"),
                    league=item.get("league"),
                )
            )
        logger.info(f"Loaded {len(records)} source {source.value} teams from {path}")
        return cls(source, records)
