"""Shared fixtures for caseflow tests."""

from typing import Any, Dict

import pytest

import caseflow.persistence as persistence
from caseflow.config import CaseflowConfig
from caseflow.definitions import DefinitionStore
from caseflow.engine import InstanceEngine
from caseflow.persistence import InMemoryProcessRepository
from caseflow.progress import StageProgressEngine

TENANT = "tenant-a"


@pytest.fixture(autouse=True)
def _isolated_environment(monkeypatch, tmp_path):
    monkeypatch.delenv("CASEFLOW_DATABASE_URL", raising=False)
    monkeypatch.delenv("DATABASE_URL", raising=False)
    monkeypatch.setenv("CASEFLOW_CONFIG", str(tmp_path / "absent.yaml"))
    monkeypatch.setattr(persistence, "_repository_instance", None)


@pytest.fixture
def repo():
    return InMemoryProcessRepository()


@pytest.fixture
def config():
    return CaseflowConfig()


@pytest.fixture
def store(repo, config):
    return DefinitionStore(repo, config)


@pytest.fixture
def engine(repo, config):
    return InstanceEngine(repo)


@pytest.fixture
def stages(repo, config):
    return StageProgressEngine(repo, config=config)


def _process(**overrides: Any) -> Dict[str, Any]:
    data = {
        "kind": "process",
        "name": "Client onboarding",
        "category": "client_onboarding",
        "entity_type": "client",
        "steps": [
            {"id": "intake", "name": "Intake", "is_initial": True},
            {"id": "review", "name": "Review", "dependencies": ["intake"]},
            {"id": "approve", "name": "Approve", "is_final": True},
        ],
    }
    data.update(overrides)
    return data


def _case(**overrides: Any) -> Dict[str, Any]:
    data = {
        "kind": "case",
        "name": "Labor workflow",
        "case_category": "labor",
        "transition_mode": "explicit",
        "stages": [
            {"id": "A", "name": "Filed", "is_initial": True},
            {
                "id": "B",
                "name": "Hearing",
                "dependencies": ["A"],
                "requirements": [
                    {"id": "brief", "name": "Submit brief"},
                    {"id": "memo", "name": "Internal memo", "is_required": False},
                ],
            },
            {"id": "C", "name": "Judgment", "is_final": True, "dependencies": ["B"]},
        ],
        "transitions": [
            {"from_stage_id": "A", "to_stage_id": "B"},
            {"from_stage_id": "B", "to_stage_id": "C"},
        ],
    }
    data.update(overrides)
    return data


@pytest.fixture
def process_data():
    """Factory for a three-step linear process template payload."""
    return _process


@pytest.fixture
def case_data():
    """Factory for a three-stage explicit case workflow payload."""
    return _case
