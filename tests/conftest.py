"""
Shared pytest fixtures for wagerlab tests.

Provides:
- content_root: temporary content directory with goodAI (4 rows) and badAI (3 rows)
- store: empty InMemoryDocumentStore
- scheduler: ManualScheduler on a virtual clock
- harness: fully wired server on RecordingTransport + ManualScheduler
"""

from __future__ import annotations

import pytest

from tests.fixtures.session_helpers import ManualScheduler, build_harness, make_content_root
from wagerlab.server.document_store import InMemoryDocumentStore


@pytest.fixture
def content_root(tmp_path):
    return make_content_root(tmp_path / "content", {"goodAI": 4, "badAI": 3})


@pytest.fixture
def store():
    return InMemoryDocumentStore()


@pytest.fixture
def scheduler():
    return ManualScheduler()


@pytest.fixture
def harness(content_root):
    return build_harness(content_root, ai_modes=["goodAI", "badAI"])
