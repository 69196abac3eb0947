"""Shared fixtures for mnemos tests."""

import zlib

import numpy as np
import pytest
import pytest_asyncio

from mnemos.core.config import Config
from mnemos.search.tokenizer import query_terms
from mnemos.store.graph import RelationshipGraph
from mnemos.store.memory import MemoryStore
from mnemos.system import MemoryEngine

DIM = 64


def hashed_embedding(text: str, dim: int = DIM) -> list:
    """Deterministic bag-of-words vector: one hashed bucket per stemmed term."""
    vec = np.zeros(dim, dtype=np.float64)
    for term in query_terms(text):
        vec[zlib.crc32(term.encode("utf-8")) % dim] += 1.0
    norm = np.linalg.norm(vec)
    if norm == 0.0:
        vec[0] = 1.0
        return vec.tolist()
    return (vec / norm).tolist()


def unit(*components: float) -> list:
    """A DIM-sized vector with the given leading components, zero-padded."""
    vec = list(components) + [0.0] * (DIM - len(components))
    return vec


@pytest.fixture
def tmp_dir(tmp_path):
    """Provide a temporary directory that persists for the test."""
    return tmp_path


@pytest.fixture
def config(tmp_dir):
    """Text-only Config pointing at a temp directory."""
    cfg = Config.from_data_dir(
        tmp_dir, embedding_backend="none", embedding_dimension=DIM
    )
    cfg.ensure_directories()
    return cfg


@pytest_asyncio.fixture
async def store(config):
    """Provide an initialised MemoryStore."""
    s = MemoryStore(config)
    await s.init()
    yield s
    await s.close()


@pytest_asyncio.fixture
async def graph(config, store):
    """Provide a RelationshipGraph whose endpoints live in ``store``."""
    g = RelationshipGraph(config.relationships_path, store.__contains__)
    await g.init()
    yield g
    await g.close()


@pytest_asyncio.fixture
async def engine(config):
    """MemoryEngine without an embedding backend (text search only)."""
    e = MemoryEngine(config=config, embedding_backend=None)
    await e.init()
    yield e
    await e.close()


@pytest_asyncio.fixture
async def vector_engine(config):
    """MemoryEngine with the deterministic hashed embedding."""
    e = MemoryEngine(config=config, embedding_func=hashed_embedding)
    await e.init()
    yield e
    await e.close()
