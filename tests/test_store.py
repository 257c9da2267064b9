"""
Episode store tests.

Tests cover:
    1. Episode insert/lookup and the one-episode-per-signature guard
    2. Partial updates and embedding round trips
    3. Text search, project listing, clearing, statistics
    4. Raw events: windows, settling, linking, repeat lookups
    5. Startup failure
"""

from __future__ import annotations

import unittest

import numpy as np

from ghostly_core import (
    Episode,
    EpisodeStore,
    StoreUnavailableError,
    hash_project_path,
)
from support import OTHER_DIR, PROJECT_DIR, T0, _TempStoreMixin, make_event


def make_episode(summary="Error: Cannot find module 'express'", cwd=PROJECT_DIR,
                 keywords=None, embedding=None, last_seen=T0):
    return Episode(
        project_hash=hash_project_path(cwd),
        directory=cwd,
        git_branch="main",
        problem_summary=summary,
        environment="linux | x86_64 | Python 3.12.0",
        fix_sequence="npm install && npm start",
        keywords=keywords if keywords is not None else ["express", "npm"],
        embedding=embedding,
        first_seen=last_seen,
        last_seen=last_seen,
    )


class TestEpisodes(_TempStoreMixin, unittest.TestCase):

    def test_insert_and_find(self):
        episode_id, created = self.store.insert_episode(make_episode())
        self.assertTrue(created)

        found = self.store.find_episode(hash_project_path(PROJECT_DIR), "Error: Cannot find module 'express'")
        self.assertIsNotNone(found)
        self.assertEqual(found.id, episode_id)
        self.assertEqual(found.keywords, ["express", "npm"])
        self.assertEqual(found.occurrence_count, 1)
        self.assertIsNone(found.embedding)

    def test_find_missing_returns_none(self):
        self.assertIsNone(self.store.find_episode("nope", "nothing"))

    def test_duplicate_signature_merges(self):
        first_id, _ = self.store.insert_episode(make_episode(last_seen=T0))
        second_id, created = self.store.insert_episode(make_episode(last_seen=T0 + 60))

        self.assertFalse(created)
        self.assertEqual(first_id, second_id)
        episode = self.store.get_episode(first_id)
        self.assertEqual(episode.occurrence_count, 2)
        self.assertEqual(episode.last_seen, T0 + 60)
        self.assertEqual(self.store.stats()["total_episodes"], 1)

    def test_same_signature_in_other_project_is_separate(self):
        self.store.insert_episode(make_episode(cwd=PROJECT_DIR))
        _, created = self.store.insert_episode(make_episode(cwd=OTHER_DIR))
        self.assertTrue(created)
        self.assertEqual(self.store.stats()["projects"], 2)

    def test_two_handles_keep_one_episode(self):
        other = EpisodeStore(str(self.base_dir / "memory.db"))
        try:
            _, created_a = self.store.insert_episode(make_episode())
            _, created_b = other.insert_episode(make_episode())
        finally:
            other.close()
        self.assertEqual(sorted([created_a, created_b]), [False, True])
        episodes = self.store.get_episodes_by_project(hash_project_path(PROJECT_DIR))
        self.assertEqual(len(episodes), 1)
        self.assertEqual(episodes[0].occurrence_count, 2)

    def test_record_occurrence(self):
        episode_id, _ = self.store.insert_episode(make_episode(last_seen=T0))
        self.store.record_occurrence(episode_id, T0 + 10)
        episode = self.store.get_episode(episode_id)
        self.assertEqual(episode.occurrence_count, 2)
        self.assertEqual(episode.last_seen, T0 + 10)

    def test_update_episode_fields(self):
        episode_id, _ = self.store.insert_episode(make_episode())
        self.store.update_episode(episode_id, last_seen=T0 + 5, occurrence_count=7,
                                  embedding=np.array([0.5, 0.5], dtype=np.float32))
        episode = self.store.get_episode(episode_id)
        self.assertEqual(episode.last_seen, T0 + 5)
        self.assertEqual(episode.occurrence_count, 7)
        np.testing.assert_array_equal(episode.embedding, np.array([0.5, 0.5], dtype=np.float32))

        self.store.update_episode(episode_id, embedding=None)
        self.assertIsNone(self.store.get_episode(episode_id).embedding)

    def test_embedding_round_trip(self):
        vector = np.array([0.1, -0.2, 0.3, 0.4], dtype=np.float32)
        episode_id, _ = self.store.insert_episode(make_episode(embedding=vector))
        stored = self.store.get_episode(episode_id).embedding
        self.assertEqual(stored.dtype, np.float32)
        np.testing.assert_array_equal(stored, vector)

    def test_episodes_with_embeddings_only(self):
        self.store.insert_episode(make_episode(summary="A", embedding=np.ones(3, dtype=np.float32)))
        self.store.insert_episode(make_episode(summary="B"))
        episodes = self.store.get_episodes_with_embeddings()
        self.assertEqual([e.problem_summary for e in episodes], ["A"])

    def test_project_listing_newest_first(self):
        self.store.insert_episode(make_episode(summary="old", last_seen=T0))
        self.store.insert_episode(make_episode(summary="new", last_seen=T0 + 100))
        self.store.insert_episode(make_episode(summary="elsewhere", cwd=OTHER_DIR))
        episodes = self.store.get_episodes_by_project(hash_project_path(PROJECT_DIR))
        self.assertEqual([e.problem_summary for e in episodes], ["new", "old"])

    def test_recent_episodes_limit(self):
        for i in range(4):
            self.store.insert_episode(make_episode(summary=f"problem {i}", last_seen=T0 + i))
        recent = self.store.get_recent_episodes(2)
        self.assertEqual([e.problem_summary for e in recent], ["problem 3", "problem 2"])


class TestSearch(_TempStoreMixin, unittest.TestCase):

    def setUp(self):
        super().setUp()
        self.store.insert_episode(make_episode(summary="ENOENT: no such file", keywords=["enoent", "cat"]))
        self.store.insert_episode(make_episode(summary="Error: permission denied", keywords=["chmod", "sudo"]))

    def test_matches_summary_case_insensitive(self):
        results = self.store.search_episodes_by_text("no such FILE")
        self.assertEqual([e.problem_summary for e in results], ["ENOENT: no such file"])

    def test_matches_keywords(self):
        results = self.store.search_episodes_by_text("chmod")
        self.assertEqual([e.problem_summary for e in results], ["Error: permission denied"])

    def test_wildcards_are_literal(self):
        self.assertEqual(self.store.search_episodes_by_text("%"), [])
        self.assertEqual(self.store.search_episodes_by_text("_"), [])

    def test_limit(self):
        self.assertEqual(len(self.store.search_episodes_by_text("e", limit=1)), 1)


class TestClearAndStats(_TempStoreMixin, unittest.TestCase):

    def test_clear_project(self):
        episode_id, _ = self.store.insert_episode(make_episode())
        self.store.insert_episode(make_episode(cwd=OTHER_DIR))
        event_id = self.store.insert_raw_event(make_event("npm start"), episode_id=episode_id)

        removed = self.store.clear_project(hash_project_path(PROJECT_DIR))

        self.assertEqual(removed, 1)
        self.assertEqual(self.store.get_episodes_by_project(hash_project_path(PROJECT_DIR)), [])
        self.assertEqual(len(self.store.get_episodes_by_project(hash_project_path(OTHER_DIR))), 1)
        events = self.store.get_recent_events_for_directory(PROJECT_DIR, 0)
        self.assertEqual([(e.id, e.episode_id) for e in events], [(event_id, None)])

    def test_stats(self):
        self.assertEqual(self.store.stats(), {"total_episodes": 0, "total_events": 0, "projects": 0})
        self.store.insert_episode(make_episode())
        self.store.insert_raw_event(make_event("ls"))
        self.store.insert_raw_event(make_event("pwd"))
        self.assertEqual(self.store.stats(), {"total_episodes": 1, "total_events": 2, "projects": 1})


class TestRawEvents(_TempStoreMixin, unittest.TestCase):

    def test_round_trip(self):
        event = make_event("make", exit_code=2, stderr="make: *** No rule", git_branch=None)
        event_id = self.store.insert_raw_event(event)
        [stored] = self.store.get_recent_events_for_directory(PROJECT_DIR, T0 - 1)
        self.assertEqual(stored.id, event_id)
        self.assertIsNone(stored.episode_id)
        self.assertIsNone(stored.git_branch)
        self.assertEqual(stored.exit_code, 2)
        self.assertEqual(stored.stderr, "make: *** No rule")
        self.assertEqual(stored.session_id, "test-session")
        self.assertFalse(stored.settled)
        self.assertEqual(stored.project_hash, event.project_hash)

    def test_directory_window_is_ascending_and_exclusive(self):
        self.store.insert_raw_event(make_event("third", timestamp=T0 + 30))
        self.store.insert_raw_event(make_event("first", timestamp=T0 + 10))
        self.store.insert_raw_event(make_event("at start", timestamp=T0))
        self.store.insert_raw_event(make_event("elsewhere", cwd=OTHER_DIR, timestamp=T0 + 20))
        events = self.store.get_recent_events_for_directory(PROJECT_DIR, T0)
        self.assertEqual([e.command for e in events], ["first", "third"])

    def test_unsettled_events(self):
        a = self.store.insert_raw_event(make_event("a", exit_code=1, timestamp=T0))
        self.store.insert_raw_event(make_event("b", timestamp=T0 + 1), settled=True)
        self.store.insert_raw_event(make_event("c", exit_code=1, timestamp=T0 + 500))
        self.store.insert_raw_event(make_event("d", exit_code=1, cwd=OTHER_DIR, timestamp=T0))

        pending = self.store.get_unsettled_events(T0 + 100, cwd=PROJECT_DIR)
        self.assertEqual([e.command for e in pending], ["a"])
        self.assertEqual(len(self.store.get_unsettled_events(T0 + 100)), 2)

        self.assertTrue(self.store.claim_event(a))
        self.assertEqual(self.store.get_unsettled_events(T0 + 100, cwd=PROJECT_DIR), [])

    def test_claim_is_taken_once_across_handles(self):
        event_id = self.store.insert_raw_event(make_event("a", exit_code=1))
        with EpisodeStore(self.store.db_path) as other:
            self.assertTrue(other.claim_event(event_id))
            self.assertFalse(self.store.claim_event(event_id))

        self.store.release_claim(event_id)
        [pending] = self.store.get_unsettled_events(T0 + 1)
        self.assertEqual(pending.id, event_id)

    def test_link_raw_events(self):
        episode_id, _ = self.store.insert_episode(make_episode())
        ids = [self.store.insert_raw_event(make_event(c)) for c in ("x", "y")]
        self.store.link_raw_events(ids, episode_id)
        linked = self.store.get_raw_events_for_episode(episode_id)
        self.assertEqual(sorted(e.id for e in linked), sorted(ids))

    def test_last_event_for_command(self):
        self.store.insert_raw_event(make_event("npm test", timestamp=T0))
        self.store.insert_raw_event(make_event("npm test", timestamp=T0 + 60))
        last = self.store.get_last_event_for_command(PROJECT_DIR, "npm test", now=T0 + 120)
        self.assertEqual(last.timestamp, T0 + 60)
        self.assertIsNone(
            self.store.get_last_event_for_command(PROJECT_DIR, "npm test", now=T0 + 25 * 3600)
        )
        self.assertIsNone(self.store.get_last_event_for_command(OTHER_DIR, "npm test", now=T0 + 120))


class TestStartup(unittest.TestCase):

    def test_unopenable_database_is_fatal(self):
        import tempfile

        with tempfile.TemporaryDirectory() as tmp:
            with self.assertRaises(StoreUnavailableError):
                EpisodeStore(tmp)

    def test_creates_missing_directory(self):
        import os
        import tempfile

        with tempfile.TemporaryDirectory() as tmp:
            path = os.path.join(tmp, "nested", "dir", "memory.db")
            with EpisodeStore(path) as store:
                self.assertEqual(store.stats()["total_episodes"], 0)
            self.assertTrue(os.path.exists(path))
