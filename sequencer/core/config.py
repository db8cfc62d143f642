"""Configuration loading and models."""

import os
from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel, Field, field_validator

from sequencer.outreach.models import CHANNELS


class DraftConfig(BaseModel):
    model: str = "claude-sonnet-4-5"
    max_tokens: int = 1024
    timeout_seconds: float = 20.0


class CrmConfig(BaseModel):
    enabled: bool = True
    domain: str = ""  # Freshsales subdomain, e.g. "acme" for acme.freshsales.io
    api_key: str = ""
    timeout_seconds: float = 10.0
    workers: int = 2


class DueStepsConfig(BaseModel):
    limit: int = 50


class CacheConfig(BaseModel):
    ttl_minutes: int = 60


class Settings(BaseModel):
    drafts: DraftConfig = DraftConfig()
    crm: CrmConfig = CrmConfig()
    due_steps: DueStepsConfig = DueStepsConfig()
    cache: CacheConfig = CacheConfig()


class StepConfig(BaseModel):
    """One step of a sequence definition file."""
    channel: str
    tone: Optional[str] = None
    template: Optional[str] = None
    delay_days: int = Field(0, ge=0)
    notes: Optional[str] = None

    @field_validator("channel")
    @classmethod
    def known_channel(cls, value: str) -> str:
        if value not in CHANNELS:
            raise ValueError(f"Unknown channel '{value}'. Must be one of: {', '.join(CHANNELS)}")
        return value


class SequenceConfig(BaseModel):
    """Sequence definition as written in YAML."""
    name: str
    description: str = ""
    steps: list[StepConfig] = Field(min_length=1)


DEFAULT_CONFIG_PATH = Path("config")


def load_settings(config_path: Path = DEFAULT_CONFIG_PATH) -> Settings:
    """Load settings from YAML file."""
    settings_file = config_path / "settings.yaml"

    if not settings_file.exists():
        settings = Settings()
    else:
        with open(settings_file) as f:
            data = yaml.safe_load(f) or {}
        settings = Settings(**data)

    # Secrets come from the environment when not set in YAML
    if not settings.crm.domain:
        settings.crm.domain = os.environ.get("FRESHSALES_DOMAIN", "")
    if not settings.crm.api_key:
        settings.crm.api_key = os.environ.get("FRESHSALES_API_KEY", "")

    return settings


def load_sequence_file(path: Path) -> SequenceConfig:
    """Load a sequence definition from a YAML file."""
    with open(path) as f:
        data = yaml.safe_load(f) or {}

    if "name" not in data:
        raise ValueError(f"Sequence file '{path}' is missing 'name'")

    return SequenceConfig(**data)
