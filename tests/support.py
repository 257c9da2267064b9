"""Helpers shared by the test modules."""

from __future__ import annotations

import tempfile
from pathlib import Path
from typing import Dict, List, Optional, Sequence

import numpy as np

from ghostly_core import EpisodeStore, TerminalEvent

PROJECT_DIR = "/home/dev/webapp"
OTHER_DIR = "/home/dev/api"
T0 = 1_700_000_000.0


def make_event(
    command: str,
    exit_code: int = 0,
    stderr: str = "",
    cwd: str = PROJECT_DIR,
    timestamp: float = T0,
    git_branch: Optional[str] = "main",
) -> TerminalEvent:
    return TerminalEvent.create(
        command=command,
        exit_code=exit_code,
        cwd=cwd,
        stderr=stderr,
        session_id="test-session",
        git_branch=git_branch,
        timestamp=timestamp,
    )


class FakeEmbedder:
    """
    Returns a fixed vector for any text containing one of its keys,
    None otherwise (as the real provider does when offline).
    """

    def __init__(self, vectors: Optional[Dict[str, Sequence[float]]] = None):
        self.vectors = {k: np.array(v, dtype=np.float32) for k, v in (vectors or {}).items()}
        self.calls: List[tuple] = []

    def embed(self, text: str, task_type: str = "retrieval_document"):
        self.calls.append((text, task_type))
        for key, vector in self.vectors.items():
            if key in text:
                return vector
        return None


class HookedEmbedder(FakeEmbedder):
    """
    Runs a callback inside the first document embed, the slow network call
    where another session can interleave.
    """

    def __init__(self, during_embed, vectors=None):
        super().__init__(vectors)
        self.during_embed = during_embed

    def embed(self, text: str, task_type: str = "retrieval_document"):
        if task_type == "retrieval_document" and self.during_embed is not None:
            hook, self.during_embed = self.during_embed, None
            hook()
        return super().embed(text, task_type)


class FakeClock:
    def __init__(self, start: float = T0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


class _TempStoreMixin:
    """Provides a fresh on-disk episode store for each test."""

    def setUp(self):
        self._tmpdir = tempfile.TemporaryDirectory()
        self.base_dir = Path(self._tmpdir.name)
        self.store = EpisodeStore(str(self.base_dir / "memory.db"))

    def tearDown(self):
        self.store.close()
        self._tmpdir.cleanup()
