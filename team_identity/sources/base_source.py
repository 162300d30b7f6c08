from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

import httpx
from loguru import logger
from tenacity import (
    retry,
    stop_after_attempt,
    wait_exponential,
    retry_if_exception_type,
    RetryError,
)

from team_identity.config.settings import SourceConfig
from team_identity.errors import SourceUnavailable
from team_identity.models.enums import Source
from team_identity.models.team import TeamRecord

# Define common HTTP status codes that warrant a retry
RETRYABLE_STATUS_CODES = {408, 429, 500, 502, 503, 504}


class RateLimitError(Exception):
    """Raised for 429 responses so tenacity retries them."""

    pass


class TeamSource(ABC):
    """A provider's team universe, already shaped as TeamRecords.

    Implementations raise SourceUnavailable when a country cannot be fetched
    completely; the caller then treats that partition as unknown.
    """

    source: Source

    @abstractmethod
    async def fetch_teams(self, country: str) -> List[TeamRecord]:
        """Fetch every team the provider lists for ``country``."""
        pass

    @abstractmethod
    async def list_countries(self) -> List[str]:
        """Countries the provider has teams for."""
        pass

    async def close(self) -> None:
        pass


class HttpTeamSource(TeamSource):
    """Reads team lists from a JSON endpoint through a configured field map.

    The field map is the whole per-provider adapter: it names where the
    list, the id, the name, the country and the league live in a response.
    """

    def __init__(
        self,
        source: Source,
        config: SourceConfig,
        client: Optional[httpx.AsyncClient] = None,
    ):
        if not config.base_url:
            raise ValueError(f"Source {source.value} has no base_url configured")
        self.source = source
        self.config = config
        headers = {"Accept": "application/json"}
        if config.api_key:
            headers[config.api_key_header] = config.api_key
        self.client = client or httpx.AsyncClient(
            base_url=config.base_url,
            timeout=httpx.Timeout(config.timeout),
            follow_redirects=True,
            headers=headers,
        )
        if client is not None:
            self.client.headers.update(headers)

    @retry(
        stop=stop_after_attempt(4),  # 3 retries after the first attempt
        wait=wait_exponential(multiplier=1, min=1, max=10),
        retry=retry_if_exception_type(
            (httpx.TransportError, httpx.HTTPStatusError, RateLimitError)
        ),
        reraise=False,
    )
    async def _make_request(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        logger.debug(f"Requesting {path} from source {self.source.value} with {params}")
        response = await self.client.get(path, params=params)

        if response.status_code in {401, 403}:
            # Credentials do not fix themselves between attempts
            raise SourceUnavailable(
                f"Authentication failed ({response.status_code}) for source {self.source.value}",
                source=self.source,
            )
        if response.status_code == 429:
            logger.warning(
                f"Rate limit hit (429) for source {self.source.value}. "
                f"Retry-After: {response.headers.get('Retry-After')}"
            )
            raise RateLimitError(f"Rate limited by source {self.source.value}")
        if response.status_code in RETRYABLE_STATUS_CODES:
            response.raise_for_status()
        if response.is_error:
            raise SourceUnavailable(
                f"HTTP error {response.status_code} from source {self.source.value}",
                source=self.source,
            )
        return response.json()

    async def _get(self, path: str, params: Optional[Dict[str, Any]], country: Optional[str]) -> Any:
        try:
            return await self._make_request(path, params)
        except RetryError as e:
            cause = e.last_attempt.exception()
            logger.error(
                f"Max retries exceeded for source {self.source.value} at {path}. Last exception: {cause}"
            )
            raise SourceUnavailable(
                f"Source {self.source.value} unavailable after retries: {cause}",
                source=self.source,
                country=country,
            ) from cause
        except ValueError as e:
            # Body was not JSON
            raise SourceUnavailable(
                f"Malformed response from source {self.source.value}: {e}",
                source=self.source,
                country=country,
            ) from e

    def _items(self, payload: Any) -> List[Any]:
        items = payload
        if self.config.items_key:
            for part in self.config.items_key.split("."):
                items = items.get(part) if isinstance(items, dict) else None
        if not isinstance(items, list):
            raise SourceUnavailable(
                f"Response from source {self.source.value} has no team list at '{self.config.items_key}'",
                source=self.source,
            )
        return items

    def _declared_total(self, payload: Any) -> Optional[int]:
        if not self.config.total_key or not isinstance(payload, dict):
            return None
        value: Any = payload
        for part in self.config.total_key.split("."):
            value = value.get(part) if isinstance(value, dict) else None
        try:
            return int(value) if value is not None else None
        except (TypeError, ValueError):
            return None

    @staticmethod
    def _field(item: Dict[str, Any], dotted: Optional[str]) -> Any:
        if not dotted:
            return None
        value: Any = item
        for part in dotted.split("."):
            if not isinstance(value, dict):
                return None
            value = value.get(part)
        return value

    def _to_record(self, item: Any, country: str) -> Optional[TeamRecord]:
        if not isinstance(item, dict):
            logger.warning(f"Skipping non-dictionary team item from source {self.source.value}: {type(item)}")
            return None
        source_id = self._field(item, self.config.id_field)
        name = self._field(item, self.config.name_field)
        if source_id is None or not name:
            logger.warning(f"Skipping team item without id/name from source {self.source.value}: {item}")
            return None
        return TeamRecord(
            source=self.source,
            source_id=str(source_id),
            raw_name=str(name),
            country=self._field(item, self.config.country_field) or country,
            league=self._field(item, self.config.league_field),
        )

    async def fetch_teams(self, country: str) -> List[TeamRecord]:
        payload = await self._get(
            self.config.teams_path, {self.config.country_param: country}, country
        )
        items = self._items(payload)

        declared = self._declared_total(payload)
        if declared is not None and declared > len(items):
            raise SourceUnavailable(
                f"Partial page from source {self.source.value} for {country}: "
                f"{len(items)} of {declared} teams",
                source=self.source,
                country=country,
            )

        records = [r for r in (self._to_record(item, country) for item in items) if r]
        logger.info(f"Fetched {len(records)} teams for {country} from source {self.source.value}")
        return records

    async def list_countries(self) -> List[str]:
        if not self.config.countries_path:
            return []
        payload = await self._get(self.config.countries_path, None, None)
        countries = []
        for item in self._items(payload):
            name = item.get("name") if isinstance(item, dict) else item
            if name:
                countries.append(str(name))
        return countries

    async def close(self) -> None:
        """Closes the underlying HTTP client."""
        await self.client.aclose()
        logger.info(f"Closed HTTP client for source {self.source.value}")
