import pytest

from graphkeeper.graph.memory_store import InMemoryGraphStore


@pytest.fixture
def anyio_backend():
    """Restrict anyio to asyncio (trio not installed)."""
    return "asyncio"


@pytest.fixture
def store():
    """Empty in-process graph store that returns every search hit."""
    return InMemoryGraphStore(min_score=0.0)
