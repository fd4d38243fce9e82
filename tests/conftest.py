"""Shared fixtures: in-memory store and a fixed clock."""

import os

# Engine settings are read at import time.
os.environ["ENGINE_TIMEZONE"] = "UTC"
os.environ["STORE_BACKEND"] = "memory"

import pytest

from queue_engine.models import Organization
from queue_engine.stores.memory import MemoryStore
from tests.factories import NOW


@pytest.fixture
def store():
    s = MemoryStore()
    s.save_organization(Organization(organization_id="org-1", name="Main"))
    return s


@pytest.fixture
def now():
    return NOW
