from __future__ import annotations

import json

import pytest
from loguru import logger
from pydantic import ValidationError

from team_identity.config import settings as settings_module
from team_identity.config.settings import AppSettings, MatchingConfig
from team_identity.logging.setup import make_sensitive_data_filter, setup_logging


def test_defaults():
    config = AppSettings(_env_file=None)
    assert config.matching.auto_verify_threshold == 0.95
    assert config.matching.accept_threshold == 0.80
    assert config.matching.review_threshold == 0.70
    assert config.matching.effective_ambiguity_floor == 0.70
    assert config.matching.allow_cross_country is False
    assert config.sync.verify_after_confirmations == 3
    assert config.sync.create_single_source_stubs is False
    assert config.storage_backend == "json"


def test_nested_environment_variables(monkeypatch):
    monkeypatch.setenv("MATCHING__ACCEPT_THRESHOLD", "0.85")
    monkeypatch.setenv("SYNC__MAX_WORKERS", "2")
    monkeypatch.setenv("SOURCE_B__BASE_URL", "https://api.example.test")
    monkeypatch.setenv("STORAGE_BACKEND", "supabase")

    config = AppSettings(_env_file=None)
    assert config.matching.accept_threshold == 0.85
    assert config.sync.max_workers == 2
    assert config.source_b.base_url == "https://api.example.test"
    assert config.storage_backend == "supabase"


def test_load_settings_normalizes_log_level(monkeypatch, tmp_path):
    # No .env in the working directory
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("LOG_LEVEL", "debug")
    assert settings_module.load_settings().log_level == "DEBUG"

    monkeypatch.setenv("LOG_LEVEL", "chatty")
    assert settings_module.load_settings().log_level == "INFO"


def test_thresholds_must_be_ordered():
    with pytest.raises(ValidationError):
        MatchingConfig(review_threshold=0.9, accept_threshold=0.8)
    with pytest.raises(ValidationError):
        MatchingConfig(accept_threshold=1.5)


def test_explicit_ambiguity_floor():
    assert MatchingConfig(ambiguity_floor=0.5).effective_ambiguity_floor == 0.5


def test_sensitive_data_filter_masks_configured_secrets():
    config = AppSettings(_env_file=None, supabase_key="super-secret-service-key")
    log_filter = make_sensitive_data_filter(config)
    record = {
        "message": "Connecting with super-secret-service-key",
        "extra": {"api_token": "abcdefghijklmnop", "country": "England"},
    }

    assert log_filter(record) is True
    assert "super-secret-service-key" not in record["message"]
    assert record["extra"]["api_token"] == "abcd****mnop"
    assert record["extra"]["country"] == "England"


def test_file_sink_writes_masked_json_lines(tmp_path):
    log_path = tmp_path / "sync.log"
    config = AppSettings(_env_file=None, log_file=log_path, supabase_key="super-secret-service-key")

    setup_logging(config)
    logger.info("Partition England done with super-secret-service-key")
    logger.remove()  # flushes the queued file sink

    lines = [json.loads(line) for line in log_path.read_text().splitlines()]
    messages = [line["record"]["message"] for line in lines]
    assert any("Partition England done" in m for m in messages)
    assert not any("super-secret-service-key" in m for m in messages)

    setup_logging(AppSettings(_env_file=None))
