from enum import Enum


class Source(str, Enum):
    A = "A"  # AllSports
    B = "B"  # API-Football

    def other(self) -> "Source":
        return Source.B if self is Source.A else Source.A


class ScoreMethod(str, Enum):
    EDIT_DISTANCE = "edit_distance"
    TOKEN_OVERLAP = "token_overlap"
    ACRONYM = "acronym"
    CONTAINMENT = "containment"
    NONE = "none"  # No signal (empty input)


class MatchStatus(str, Enum):
    AUTO_VERIFIED = "auto_verified"
    ACCEPTED = "accepted"
    MANUAL_REVIEW = "manual_review"
    AMBIGUOUS = "ambiguous"
    REJECTED = "rejected"
    ALTERNATE = "alternate"  # Lost a one-to-one conflict

    @property
    def is_accepted(self) -> bool:
        return self in (MatchStatus.AUTO_VERIFIED, MatchStatus.ACCEPTED)


class MappingStatus(str, Enum):
    STUB = "stub"  # Only one source known so far
    ACCEPTED = "accepted"
    AUTO_VERIFIED = "auto_verified"
    VERIFIED = "verified"  # Human confirmed or promoted after repeated syncs


class PartitionStatus(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    UNAVAILABLE = "unavailable"
    SKIPPED = "skipped"  # Already in the checkpoint for this cycle
    CANCELLED = "cancelled"
