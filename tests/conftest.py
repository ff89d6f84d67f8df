"""
Shared fixtures for the allocation test suite.

Time is pinned with MockClock so eligibility and donation
timestamps are deterministic.
"""

import os
from datetime import datetime, timezone

import pytest

from core.clock import MockClock
from donor_allocation import AllocationEngine, get_default_config, seed_store


# ============================================================
# FIXTURES
# ============================================================

@pytest.fixture
def t0():
    """Reference instant: 2024-08-01 12:00 UTC."""
    return datetime(2024, 8, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def clock(t0):
    """Mock clock pinned at t0."""
    return MockClock(t0)


@pytest.fixture
def config():
    """Default configuration (strict assignment, 3-month cool-down)."""
    return get_default_config()


@pytest.fixture
def engine(clock, config):
    """Empty engine on the mock clock."""
    return AllocationEngine(config=config, clock=clock)


@pytest.fixture
def seeded_engine(engine):
    """Engine loaded with the demo dataset."""
    seed_store(engine.store)
    return engine


@pytest.fixture
def hospital(engine):
    """A verified hospital."""
    created = engine.register_hospital("City General Hospital", "555-111-2222", "Cityville")
    return engine.verify_hospital(created.hospital_id)


@pytest.fixture
def make_donor(engine):
    """Factory registering fresh donors (available, never donated)."""
    def _make(name: str = "Donor", blood_group: str = "O+"):
        return engine.register_donor(name, blood_group)
    return _make


@pytest.fixture
def clean_env(monkeypatch, tmp_path):
    """Private environment without BLOODLINK_* variables, cwd in tmp_path."""
    env = {k: v for k, v in os.environ.items() if not k.startswith("BLOODLINK_")}
    monkeypatch.setattr(os, "environ", env)
    monkeypatch.chdir(tmp_path)
    return monkeypatch


@pytest.fixture
def make_request(engine, hospital):
    """Factory creating pending requests at the verified hospital."""
    def _make(quantity: int = 1, blood_group: str = "O+"):
        return engine.create_request(hospital.hospital_id, blood_group, quantity)
    return _make
