"""
Pytest configuration and fixtures for Task Mesh tests.
"""

import pytest
import pytest_asyncio

from task_mesh.persistence.database import Database

from tests.helpers import Mesh


@pytest.fixture
def database() -> Database:
    """Fresh in-memory SQLite database with the schema created."""
    db = Database("sqlite://")
    db.init_schema()
    yield db
    db.close()


@pytest_asyncio.fixture
async def mesh():
    """Orchestrator with in-memory registry, bus and history; no checkpoints."""
    instance = Mesh()
    yield instance
    await instance.close()


@pytest_asyncio.fixture
async def durable_mesh(database):
    """Orchestrator with SQLite checkpoints."""
    instance = Mesh(database=database)
    yield instance
    await instance.close()
