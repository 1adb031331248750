"""
Pytest fixtures for cl-batch-open tests.

Provides mock plugin, mock RPC, real temporary database and sample
candidate fixtures.
"""

import os
import sys
import tempfile
import time
from unittest.mock import MagicMock

import pytest

# Make the batchopen package importable without installing it
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from batchopen.config import Config
from batchopen.database import Database
from batchopen.models import CandidateSource, ChannelCandidate


@pytest.fixture
def temp_db_path():
    """Create a temporary database file path."""
    fd, path = tempfile.mkstemp(suffix='.db')
    os.close(fd)
    yield path
    if os.path.exists(path):
        os.unlink(path)


@pytest.fixture
def mock_plugin():
    """Create a mock plugin with basic functionality."""
    plugin = MagicMock()
    plugin.log = MagicMock()
    plugin.rpc = MagicMock()
    return plugin


@pytest.fixture
def mock_rpc():
    """Create a mock RPC interface dispatching rpc.call by method name."""
    rpc = MagicMock()
    responses = {
        "listpeerchannels": {"channels": []},
        "listpeers": {"peers": []},
        "listnodes": {"nodes": []},
        "listfunds": {"outputs": [], "channels": []},
    }

    def call(method, payload=None):
        response = responses.get(method)
        if isinstance(response, Exception):
            raise response
        if callable(response):
            return response(payload)
        return response if response is not None else {}

    rpc.call.side_effect = call
    rpc.responses = responses
    return rpc


@pytest.fixture
def database(temp_db_path, mock_plugin):
    """Real SQLite database on a temporary file."""
    db = Database(temp_db_path, mock_plugin)
    db.initialize()
    yield db
    db.close()


@pytest.fixture
def config(temp_db_path):
    return Config(db_path=temp_db_path)


@pytest.fixture
def sample_peer_ids():
    """Sample peer IDs for testing."""
    return [
        "02" + "a" * 64,
        "02" + "b" * 64,
        "02" + "c" * 64,
        "03" + "d" * 64,
        "03" + "e" * 64,
    ]


@pytest.fixture
def make_candidate():
    """Factory for candidates with sensible graph defaults."""
    def _make(pubkey, alias=None, sources=None, added_at=None, **kwargs):
        return ChannelCandidate(
            pubkey=pubkey,
            alias=alias if alias is not None else f"node-{pubkey[2:6]}",
            sources=sources if sources is not None else [CandidateSource.GRAPH_DISTANCE],
            added_at=added_at if added_at is not None else int(time.time()) - 3600,
            channels=kwargs.pop("channels", 10),
            capacity_sats=kwargs.pop("capacity_sats", 50_000_000),
            **kwargs
        )
    return _make
