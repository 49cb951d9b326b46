from __future__ import annotations

import os
from typing import Literal, Optional

import yaml
from pydantic import BaseModel, Field


class EngineConfig(BaseModel):
    """Behavioural switches for the definition store and engines."""

    record_repeat_completions: bool = Field(
        default=False,
        description="Append a history entry when a requirement is completed again",
    )
    max_nodes: int = Field(
        default=200, description="Upper bound on steps/stages per definition"
    )


class CaseflowConfig(BaseModel):
    """Top-level configuration model."""

    database_url: Optional[str] = None
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    engine: EngineConfig = EngineConfig()


def load_config(path: Optional[str] = None) -> CaseflowConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to CASEFLOW_CONFIG env
            variable or 'config.yaml' in the current directory.
    """

    config_path = path or os.getenv("CASEFLOW_CONFIG", "config.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = CaseflowConfig(**data)
    else:
        config = CaseflowConfig()

    env_db_url = os.getenv("CASEFLOW_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    return config
