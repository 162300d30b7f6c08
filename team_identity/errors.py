# team_identity/errors.py
from typing import Optional, Tuple

from team_identity.models.enums import Source


class TeamIdentityError(Exception):
    """Base exception for the team identity engine."""

    pass


class SourceUnavailable(TeamIdentityError):
    """A provider fetch failed or returned partial data.

    Treated as "unknown, retry next sync", never as evidence of no match.
    """

    def __init__(self, message: str, source: Optional[Source] = None, country: Optional[str] = None):
        super().__init__(message)
        self.source = source
        self.country = country


class ConflictOnWrite(TeamIdentityError):
    """An upsert would give a (source, id) pair to a second mapping."""

    def __init__(self, message: str, key: Tuple[Source, str], owner_id: str):
        super().__init__(message)
        self.key = key
        self.owner_id = owner_id


class MappingRejected(TeamIdentityError):
    """A mapping below the reject threshold was offered to the store."""

    pass
