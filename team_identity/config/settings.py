import logging
from pathlib import Path
from typing import List, Literal, Optional

from pydantic import BaseModel, Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class MatchingConfig(BaseModel):
    """Confidence thresholds shared by the resolver and the name lookup."""

    auto_verify_threshold: float = Field(0.95, ge=0, le=1)
    accept_threshold: float = Field(0.80, ge=0, le=1)
    review_threshold: float = Field(
        0.70, ge=0, le=1, description="Below this a pair is rejected outright."
    )
    ambiguity_margin: float = Field(0.05, ge=0, le=1)
    ambiguity_floor: Optional[float] = Field(
        None,
        ge=0,
        le=1,
        description="Minimum runner-up score that can make a match ambiguous. "
        "Defaults to review_threshold.",
    )
    allow_cross_country: bool = Field(
        False, description="Explicit opt-in for multinational competitions."
    )

    @model_validator(mode="after")
    def _check_order(self) -> "MatchingConfig":
        if not (
            self.review_threshold <= self.accept_threshold <= self.auto_verify_threshold
        ):
            raise ValueError(
                "Thresholds must satisfy review <= accept <= auto_verify "
                f"(got {self.review_threshold}, {self.accept_threshold}, {self.auto_verify_threshold})"
            )
        return self

    @property
    def reject_threshold(self) -> float:
        return self.review_threshold

    @property
    def effective_ambiguity_floor(self) -> float:
        if self.ambiguity_floor is None:
            return self.review_threshold
        return self.ambiguity_floor


class SyncConfig(BaseModel):
    max_workers: int = Field(4, ge=1, description="Partitions synced concurrently.")
    countries: List[str] = Field(
        default_factory=list,
        description="Partitions for sync_all. Empty means every country the sources report.",
    )
    create_single_source_stubs: bool = False
    verify_after_confirmations: int = Field(
        3, ge=1, description="Distinct cycles confirming an accepted pair before it is verified."
    )
    light_sync_countries: List[str] = Field(
        default_factory=lambda: ["England", "Germany", "Spain", "Italy", "France"]
    )
    light_sync_max_age_hours: float = Field(48.0, gt=0)


class SourceConfig(BaseModel):
    """Where a provider's team list comes from.

    Either ``path`` (a JSON file of team records) or ``base_url`` (a JSON
    endpoint read through the field map) must be set.
    """

    path: Optional[Path] = None
    base_url: Optional[str] = None
    teams_path: str = "/teams"
    countries_path: Optional[str] = None
    country_param: str = "country"
    api_key: Optional[str] = None
    api_key_header: str = "x-api-key"
    items_key: Optional[str] = Field(
        None, description="Key holding the team list in the response body."
    )
    total_key: Optional[str] = Field(
        None, description="Key holding the declared result count, used to detect partial pages."
    )
    id_field: str = "id"
    name_field: str = "name"
    country_field: Optional[str] = "country"
    league_field: Optional[str] = "league"
    timeout: float = Field(30.0, gt=0)


class AppSettings(BaseSettings):
    """Application settings loaded from environment variables or .env file."""

    # Persistence
    store_path: Path = Field(Path("data/team_mappings.json"))
    checkpoint_path: Path = Field(Path("data/sync_checkpoint.json"))
    storage_backend: Literal["json", "supabase"] = "json"

    # Supabase Configuration (only for storage_backend=supabase)
    supabase_url: Optional[str] = None
    supabase_key: Optional[str] = None
    supabase_table: str = "team_mappings"

    matching: MatchingConfig = Field(default_factory=MatchingConfig)
    sync: SyncConfig = Field(default_factory=SyncConfig)
    source_a: SourceConfig = Field(default_factory=SourceConfig)
    source_b: SourceConfig = Field(default_factory=SourceConfig)

    # Logging Configuration
    log_level: str = Field(
        "INFO", description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)."
    )
    log_file: Optional[Path] = Field(
        None, description="Rotating JSON log file written next to the console output."
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",
        case_sensitive=False,
    )


def load_settings() -> AppSettings:
    """Loads and validates application settings."""
    try:
        settings = AppSettings()
        log_level_upper = settings.log_level.upper()
        if log_level_upper not in ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]:
            logging.warning(
                f"Invalid LOG_LEVEL '{settings.log_level}' found in .env or default. Using INFO."
            )
            settings.log_level = "INFO"
        else:
            settings.log_level = log_level_upper
        return settings
    except Exception as e:
        logging.exception(f"Error loading application settings: {e}")
        raise SystemExit("Failed to load application settings. Exiting.")


settings: AppSettings = load_settings()
