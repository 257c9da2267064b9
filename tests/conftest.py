"""
Shared pytest fixtures.

Every test writes the operations log into its own temp directory and runs
without a Gemini model, so nothing touches ~/.ghostly or the network.
"""

from __future__ import annotations

import pytest

import ghostly_core


@pytest.fixture(autouse=True)
def isolated_ghostly(tmp_path, monkeypatch):
    monkeypatch.setattr(ghostly_core, "OPERATIONS_LOG", str(tmp_path / "operations.log"))
    monkeypatch.setattr(ghostly_core, "GHOSTLY_DB", str(tmp_path / "ghostly-memory.db"))
    monkeypatch.setattr(ghostly_core, "EMBEDDING_MODEL", None)
    yield tmp_path
