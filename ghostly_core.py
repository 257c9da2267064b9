#!/usr/bin/env python3
"""
Ghostly Memory Core Library
Remembers terminal debugging episodes (a failure followed by its fix) and
resurfaces the remembered fix when a similar failure happens again
"""

import hashlib
import json
import os
import platform
import re
import socket
import sqlite3
import subprocess
import sys
import time
from collections import deque
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Iterator, List, Optional, Sequence, Tuple, Union

import google.generativeai as genai
import numpy as np
from scipy.spatial.distance import cosine as cosine_distance

# Version
GHOSTLY_VERSION = "1.0.0"

# Configuration
GHOSTLY_DIR = os.getenv("GHOSTLY_DIR", os.path.join(os.path.expanduser("~"), ".ghostly"))
GHOSTLY_DB = os.getenv("GHOSTLY_DB", os.path.join(GHOSTLY_DIR, "ghostly-memory.db"))
OPERATIONS_LOG = os.path.join(GHOSTLY_DIR, "operations.log")

# Capture limits (characters)
MAX_STDERR_CHARS = 5000
MAX_STDOUT_CHARS = 2000

# Episode extraction
EXTRACTION_WINDOW_SECONDS = 5 * 60
MAX_FIX_COMMANDS = 5
MAX_KEYWORDS = 10
MAX_SIGNATURE_LENGTH = 100
FIX_SEPARATOR = " && "
UNKNOWN_FIX = "Unknown fix"

# Retrieval scoring
SEMANTIC_WEIGHT = 0.5
PROJECT_WEIGHT = 0.3
COMMAND_WEIGHT = 0.2
CONFIDENCE_THRESHOLD = 0.75
REPEAT_WINDOW_HOURS = 24

# Substrings (lower-case) that mark stderr as an error even on exit code 0
ERROR_PATTERNS = [
    "error",
    "fail",
    "failed",
    "failure",
    "exception",
    "fatal",
    "enoent",
    "econnrefused",
    "eacces",
    "enoexec",
    "err_",
    "panic",
    "segmentation fault",
    "core dumped",
]

STOPWORDS = {
    "the", "and", "but", "for", "with", "from", "was", "are", "were", "been",
    "have", "has", "had", "does", "did", "will", "would", "could", "should",
    "may", "might", "must", "can", "this", "that", "these", "those", "you",
    "she", "they", "what", "which", "who", "when", "where", "why", "how",
    "all", "each", "every", "both", "few", "more", "most", "other", "some",
    "such", "nor", "not", "only", "own", "same", "than", "too", "very",
    "just", "error", "failed", "fail", "file", "module", "import", "export",
}

# Gemini configuration
GEMINI_API_KEY = os.getenv("GEMINI_API_KEY")
EMBED_TIMEOUT = float(os.getenv("GHOSTLY_EMBED_TIMEOUT", "5"))
if GEMINI_API_KEY:
    genai.configure(api_key=GEMINI_API_KEY)
    EMBEDDING_MODEL = os.getenv("GHOSTLY_EMBEDDING_MODEL", "models/text-embedding-004")
else:
    EMBEDDING_MODEL = None


def _log(message: str):
    """Append to operations log"""
    timestamp = datetime.now(timezone.utc).isoformat()
    log_dir = os.path.dirname(OPERATIONS_LOG)
    if log_dir:
        os.makedirs(log_dir, exist_ok=True)
    with open(OPERATIONS_LOG, "a") as f:
        f.write(f"[{timestamp}] {message}\n")


class StoreUnavailableError(Exception):
    """Raised when the episode database cannot be opened"""


# =============================================================================
# RECORDS
# =============================================================================


@dataclass(frozen=True)
class TerminalEvent:
    """One executed command as reported by the shell hook"""

    timestamp: float
    cwd: str
    git_branch: Optional[str]
    command: str
    exit_code: int
    stderr: str
    stdout_truncated: str
    session_id: str
    project_hash: str

    @classmethod
    def create(
        cls,
        command: str,
        exit_code: int,
        cwd: str,
        stderr: str = "",
        stdout: str = "",
        session_id: str = "",
        git_branch: Optional[str] = None,
        timestamp: Optional[float] = None,
    ) -> "TerminalEvent":
        """Build an event, bounding the captured output"""
        return cls(
            timestamp=time.time() if timestamp is None else timestamp,
            cwd=cwd,
            git_branch=git_branch or None,
            command=command,
            exit_code=exit_code,
            stderr=(stderr or "")[:MAX_STDERR_CHARS],
            stdout_truncated=(stdout or "")[:MAX_STDOUT_CHARS],
            session_id=session_id,
            project_hash=hash_project_path(cwd),
        )


@dataclass
class Episode:
    """A remembered problem and the commands that fixed it"""

    project_hash: str
    directory: str
    git_branch: Optional[str]
    problem_summary: str
    environment: str
    fix_sequence: str
    keywords: List[str]
    embedding: Optional[np.ndarray]
    first_seen: float
    last_seen: float
    occurrence_count: int = 1
    id: Optional[int] = None

    @property
    def fix_commands(self) -> List[str]:
        if self.fix_sequence == UNKNOWN_FIX:
            return []
        return [c.strip() for c in self.fix_sequence.split(FIX_SEPARATOR) if c.strip()]


@dataclass
class RawEvent:
    """Stored form of a terminal event, optionally tied to an episode"""

    episode_id: Optional[int]
    timestamp: float
    cwd: str
    git_branch: Optional[str]
    command: str
    exit_code: int
    stderr: str
    stdout_truncated: str
    session_id: str
    settled: bool = False
    id: Optional[int] = None

    @property
    def project_hash(self) -> str:
        return hash_project_path(self.cwd)


# Anything the extractor can treat as one command of a window
WindowEvent = Union[TerminalEvent, RawEvent]


@dataclass(frozen=True)
class RetrievalContext:
    """The live failure a suggestion is looked up for"""

    cwd: str
    command: str
    exit_code: int
    stderr: str
    git_branch: Optional[str]
    project_hash: str

    @classmethod
    def from_event(cls, event: TerminalEvent) -> "RetrievalContext":
        return cls(
            cwd=event.cwd,
            command=event.command,
            exit_code=event.exit_code,
            stderr=event.stderr,
            git_branch=event.git_branch,
            project_hash=event.project_hash,
        )


@dataclass
class RetrievalResult:
    episode: Episode
    similarity: float
    confidence: float


@dataclass(frozen=True)
class Suggestion:
    """
    What the suggestion consumer receives.

    No message means nothing to show; a message may come with or
    without a proposed next command.
    """

    message: Optional[str] = None
    suggested_command: Optional[str] = None

    @property
    def should_show(self) -> bool:
        return self.message is not None


NO_SUGGESTION = Suggestion()


@dataclass
class ProcessOutcome:
    """Result of pushing one event through the memory"""

    event: TerminalEvent
    new_episodes: List[Episode] = field(default_factory=list)
    suggestion: Suggestion = NO_SUGGESTION


# =============================================================================
# EVENT CLASSIFIER
# =============================================================================

_EXCEPTION_LINE_RE = re.compile(r"[\w.]*(?:error|exception):[ \t]*\S[^\n]*", re.IGNORECASE)
_ERR_CODE_RE = re.compile(r"\bERR_[A-Z0-9_]+", re.IGNORECASE)
_ERRNO_RE = re.compile(
    r"\bE(?:NOENT|ACCES|PERM|EXIST|NOTDIR|ISDIR|NOEXEC|NOSPC|MFILE|PIPE|"
    r"CONNREFUSED|CONNRESET|ADDRINUSE|TIMEDOUT|HOSTUNREACH)\b[^\n]*"
)
_ERROR_PHRASE_RE = re.compile(r"\w+\s+error\b", re.IGNORECASE)

_HEX_ADDRESS_RE = re.compile(r"0x[0-9a-fA-F]+")
_LINE_REF_RE = re.compile(r":\d+(?::\d+)?\b")
_WHITESPACE_RE = re.compile(r"\s+")
_NON_ALNUM_RE = re.compile(r"[^a-z0-9\s]")


def hash_project_path(cwd: str) -> str:
    """Short grouping key for a working directory (not a security boundary)"""
    return hashlib.md5(cwd.encode("utf-8")).hexdigest()[:12]


def contains_error_marker(stderr: str) -> bool:
    lower = (stderr or "").lower()
    return any(pattern in lower for pattern in ERROR_PATTERNS)


def is_error(stderr: str, exit_code: int) -> bool:
    """True for a non-zero exit or an error marker anywhere in stderr"""
    if exit_code != 0:
        return True
    return contains_error_marker(stderr)


def normalize_signature(text: str) -> str:
    """Canonicalize fragments that change between runs of the same fault"""
    text = _HEX_ADDRESS_RE.sub("0x?", text)
    text = _LINE_REF_RE.sub(":N", text)
    return _WHITESPACE_RE.sub(" ", text).strip()


def extract_problem_signature(stderr: str, command: str) -> str:
    """
    Derive the short deduplication key for a failure.

    Prefers an "XError: message" line, then an ERR_* code, then an errno
    token with the rest of its line, then a "<word> error" phrase, then
    the first non-blank stderr line. A blank stderr falls back to the
    command itself.

    Returns:
        Normalized signature of at most MAX_SIGNATURE_LENGTH characters
    """
    text = stderr or ""
    for pattern in (_EXCEPTION_LINE_RE, _ERR_CODE_RE, _ERRNO_RE, _ERROR_PHRASE_RE):
        match = pattern.search(text)
        if match:
            signature = match.group(0)
            break
    else:
        lines = [line for line in text.splitlines() if line.strip()]
        signature = lines[0] if lines else command
    return normalize_signature(signature)[:MAX_SIGNATURE_LENGTH]


def extract_keywords(text: str) -> List[str]:
    """Unique lower-case tokens longer than two characters, minus stopwords"""
    words = _NON_ALNUM_RE.sub(" ", text.lower()).split()
    keywords: List[str] = []
    for word in words:
        if len(word) <= 2 or word in STOPWORDS or word in keywords:
            continue
        keywords.append(word)
        if len(keywords) == MAX_KEYWORDS:
            break
    return keywords


def get_environment() -> str:
    parts = [
        platform.system().lower(),
        platform.machine(),
        f"Python {platform.python_version()}",
    ]
    return " | ".join(parts)


# =============================================================================
# SIMILARITY ENGINE
# =============================================================================


def cosine_similarity(a: Optional[np.ndarray], b: Optional[np.ndarray]) -> float:
    """
    Cosine similarity between two vectors.

    Mismatched lengths and zero-magnitude vectors carry no signal and
    score 0.0 instead of raising.
    """
    if a is None or b is None:
        return 0.0
    a = np.asarray(a, dtype=np.float64)
    b = np.asarray(b, dtype=np.float64)
    if a.ndim != 1 or a.shape != b.shape or a.size == 0:
        return 0.0
    if np.linalg.norm(a) == 0 or np.linalg.norm(b) == 0:
        return 0.0
    return float(1.0 - cosine_distance(a, b))


def text_similarity(text1: str, text2: str) -> float:
    """Jaccard index of the lower-cased whitespace token sets"""
    words1 = set(text1.lower().split())
    words2 = set(text2.lower().split())
    union = words1 | words2
    if not union:
        return 0.0
    return len(words1 & words2) / len(union)


def episode_similarity(
    query_embedding: Optional[np.ndarray], episode: Episode, context: RetrievalContext
) -> float:
    """Vector similarity when both sides are embedded, token overlap otherwise"""
    if query_embedding is not None and episode.embedding is not None:
        return cosine_similarity(query_embedding, episode.embedding)
    return text_similarity(
        f"{episode.problem_summary} {' '.join(episode.keywords)}",
        f"{context.stderr} {context.command}",
    )


# =============================================================================
# CONFIDENCE SCORER
# =============================================================================


def calculate_confidence(
    semantic_similarity: float, project_match: bool, command_similarity: float
) -> float:
    """Fixed linear blend of the three signals, capped at 1.0"""
    score = (
        SEMANTIC_WEIGHT * semantic_similarity
        + PROJECT_WEIGHT * (1.0 if project_match else 0.0)
        + COMMAND_WEIGHT * command_similarity
    )
    return min(score, 1.0)


# =============================================================================
# EMBEDDING PROVIDER
# =============================================================================


def embedding_text(episode: Episode) -> str:
    parts = [
        f"Problem: {episode.problem_summary}",
        f"Directory: {episode.directory}",
        f"Environment: {episode.environment}",
        f"Fix: {episode.fix_sequence}",
        f"Keywords: {', '.join(episode.keywords)}",
    ]
    return "\n".join(parts)


class GeminiEmbedder:
    """Gemini text embeddings; every failure degrades to None"""

    def __init__(self, model: Optional[str] = None, timeout: Optional[float] = None):
        self.model = model if model is not None else EMBEDDING_MODEL
        self.timeout = timeout if timeout is not None else EMBED_TIMEOUT

    def embed(self, text: str, task_type: str = "retrieval_document") -> Optional[np.ndarray]:
        """
        Generate embedding using Gemini

        Args:
            text: Text to embed
            task_type: 'retrieval_document' for stored episodes,
                'retrieval_query' for live failures and searches

        Returns:
            numpy array of embeddings or None if unavailable
        """
        if not self.model:
            _log("WARNING: GEMINI_API_KEY not set, skipping embedding generation")
            return None

        try:
            result = genai.embed_content(
                model=self.model,
                content=text,
                task_type=task_type,
                request_options={"timeout": self.timeout},
            )
            embedding = np.array(result["embedding"], dtype=np.float32)
            _log(f"Generated embedding (dim={len(embedding)})")
            return embedding
        except Exception as e:
            _log(f"ERROR: Embedding generation failed: {str(e)}")
            return None


# =============================================================================
# EPISODE STORE
# =============================================================================

_UNSET = object()


def _row_to_episode(row: sqlite3.Row) -> Episode:
    blob = row["embedding"]
    keywords = row["keywords"] or ""
    return Episode(
        id=row["id"],
        project_hash=row["project_hash"],
        directory=row["directory"],
        git_branch=row["git_branch"],
        problem_summary=row["problem_summary"],
        environment=row["environment"] or "",
        fix_sequence=row["fix_sequence"],
        keywords=[k for k in keywords.split(", ") if k],
        embedding=np.frombuffer(blob, dtype=np.float32) if blob else None,
        first_seen=row["first_seen"],
        last_seen=row["last_seen"],
        occurrence_count=row["occurrence_count"],
    )


def _row_to_raw_event(row: sqlite3.Row) -> RawEvent:
    return RawEvent(
        id=row["id"],
        episode_id=row["episode_id"],
        timestamp=row["timestamp"],
        cwd=row["cwd"],
        git_branch=row["git_branch"],
        command=row["command"],
        exit_code=row["exit_code"],
        stderr=row["stderr"] or "",
        stdout_truncated=row["stdout_truncated"] or "",
        session_id=row["session_id"] or "",
        settled=bool(row["settled"]),
    )


def _embedding_blob(embedding: Optional[np.ndarray]) -> Optional[bytes]:
    if embedding is None:
        return None
    return np.asarray(embedding, dtype=np.float32).tobytes()


class EpisodeStore:
    """SQLite storage for episodes and raw terminal events"""

    def __init__(self, db_path: Optional[str] = None):
        """
        Open (and if needed create) the episode database.

        Raises:
            StoreUnavailableError: the database cannot be opened
        """
        self.db_path = db_path or GHOSTLY_DB
        try:
            db_dir = os.path.dirname(self.db_path)
            if db_dir and self.db_path != ":memory:":
                os.makedirs(db_dir, exist_ok=True)
            # Autocommit; multi-statement writes open their own transaction
            self.conn = sqlite3.connect(self.db_path, timeout=10.0, isolation_level=None)
            self.conn.row_factory = sqlite3.Row
            self._ensure_tables()
        except (OSError, sqlite3.Error) as e:
            raise StoreUnavailableError(f"Cannot open episode store at {self.db_path}: {e}") from e
        _log(f"Episode store opened: {self.db_path}")

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def close(self):
        self.conn.close()

    def _ensure_tables(self):
        self.conn.executescript("""
            CREATE TABLE IF NOT EXISTS episodes (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                project_hash TEXT NOT NULL,
                directory TEXT NOT NULL,
                git_branch TEXT,
                problem_summary TEXT NOT NULL,
                environment TEXT,
                fix_sequence TEXT NOT NULL,
                keywords TEXT,
                embedding BLOB,
                first_seen REAL NOT NULL,
                last_seen REAL NOT NULL,
                occurrence_count INTEGER DEFAULT 1
            );

            CREATE TABLE IF NOT EXISTS raw_events (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                episode_id INTEGER,
                timestamp REAL NOT NULL,
                cwd TEXT NOT NULL,
                git_branch TEXT,
                command TEXT NOT NULL,
                exit_code INTEGER,
                stderr TEXT,
                stdout_truncated TEXT,
                session_id TEXT,
                settled INTEGER NOT NULL DEFAULT 0,
                FOREIGN KEY (episode_id) REFERENCES episodes(id)
            );

            CREATE UNIQUE INDEX IF NOT EXISTS idx_episodes_signature
                ON episodes(project_hash, problem_summary);
            CREATE INDEX IF NOT EXISTS idx_episodes_directory ON episodes(directory);
            CREATE INDEX IF NOT EXISTS idx_episodes_last_seen ON episodes(last_seen);
            CREATE INDEX IF NOT EXISTS idx_raw_events_cwd_time ON raw_events(cwd, timestamp);
            CREATE INDEX IF NOT EXISTS idx_raw_events_settled ON raw_events(settled);
        """)

    @contextmanager
    def _write_transaction(self) -> Iterator[sqlite3.Connection]:
        """Hold the database write lock for a check-then-act sequence"""
        self.conn.execute("BEGIN IMMEDIATE")
        try:
            yield self.conn
        except BaseException:
            self.conn.execute("ROLLBACK")
            raise
        else:
            self.conn.execute("COMMIT")

    # -------------------------------------------------------------------------
    # Episodes
    # -------------------------------------------------------------------------

    def insert_episode(self, episode: Episode) -> Tuple[int, bool]:
        """
        Insert an episode unless one with the same signature already exists

        Lookup and write happen under one write lock, so two sessions racing
        on a first occurrence end up with one episode and a count of 2.

        Returns:
            Tuple of (episode_id, created)
        """
        with self._write_transaction() as conn:
            row = conn.execute(
                "SELECT id FROM episodes WHERE project_hash = ? AND problem_summary = ?",
                (episode.project_hash, episode.problem_summary),
            ).fetchone()
            if row:
                conn.execute(
                    """
                    UPDATE episodes
                    SET last_seen = MAX(last_seen, ?), occurrence_count = occurrence_count + 1
                    WHERE id = ?
                """,
                    (episode.last_seen, row["id"]),
                )
                return row["id"], False

            cursor = conn.execute(
                """
                INSERT INTO episodes (
                    project_hash, directory, git_branch, problem_summary,
                    environment, fix_sequence, keywords, embedding,
                    first_seen, last_seen, occurrence_count
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
                (
                    episode.project_hash,
                    episode.directory,
                    episode.git_branch,
                    episode.problem_summary,
                    episode.environment,
                    episode.fix_sequence,
                    ", ".join(episode.keywords),
                    _embedding_blob(episode.embedding),
                    episode.first_seen,
                    episode.last_seen,
                    episode.occurrence_count,
                ),
            )
            return cursor.lastrowid, True

    def update_episode(
        self,
        episode_id: int,
        last_seen: Optional[float] = None,
        occurrence_count: Optional[int] = None,
        embedding=_UNSET,
    ):
        """Update selected fields; pass embedding=None to drop a vector"""
        fields = []
        values: list = []
        if last_seen is not None:
            fields.append("last_seen = ?")
            values.append(last_seen)
        if occurrence_count is not None:
            fields.append("occurrence_count = ?")
            values.append(occurrence_count)
        if embedding is not _UNSET:
            fields.append("embedding = ?")
            values.append(_embedding_blob(embedding))

        if fields:
            values.append(episode_id)
            self.conn.execute(f"UPDATE episodes SET {', '.join(fields)} WHERE id = ?", values)

    def record_occurrence(self, episode_id: int, seen_at: float):
        """Count one more recurrence of an episode"""
        self.conn.execute(
            """
            UPDATE episodes
            SET last_seen = MAX(last_seen, ?), occurrence_count = occurrence_count + 1
            WHERE id = ?
        """,
            (seen_at, episode_id),
        )

    def get_episode(self, episode_id: int) -> Optional[Episode]:
        row = self.conn.execute("SELECT * FROM episodes WHERE id = ?", (episode_id,)).fetchone()
        return _row_to_episode(row) if row else None

    def find_episode(self, project_hash: str, problem_summary: str) -> Optional[Episode]:
        row = self.conn.execute(
            "SELECT * FROM episodes WHERE project_hash = ? AND problem_summary = ? LIMIT 1",
            (project_hash, problem_summary),
        ).fetchone()
        return _row_to_episode(row) if row else None

    def get_episodes_by_project(self, project_hash: str) -> List[Episode]:
        rows = self.conn.execute(
            "SELECT * FROM episodes WHERE project_hash = ? ORDER BY last_seen DESC, id DESC",
            (project_hash,),
        ).fetchall()
        return [_row_to_episode(row) for row in rows]

    def get_recent_episodes(self, limit: int = 10) -> List[Episode]:
        rows = self.conn.execute(
            "SELECT * FROM episodes ORDER BY last_seen DESC, id DESC LIMIT ?", (limit,)
        ).fetchall()
        return [_row_to_episode(row) for row in rows]

    def get_episodes_with_embeddings(self) -> List[Episode]:
        rows = self.conn.execute(
            "SELECT * FROM episodes WHERE embedding IS NOT NULL ORDER BY last_seen DESC, id DESC"
        ).fetchall()
        return [_row_to_episode(row) for row in rows]

    def search_episodes_by_text(self, text: str, limit: int = 5) -> List[Episode]:
        """Case-insensitive substring match over problem summaries and keywords"""
        escaped = text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
        pattern = f"%{escaped}%"
        rows = self.conn.execute(
            """
            SELECT * FROM episodes
            WHERE problem_summary LIKE ? ESCAPE '\\' OR keywords LIKE ? ESCAPE '\\'
            ORDER BY last_seen DESC, id DESC
            LIMIT ?
        """,
            (pattern, pattern, limit),
        ).fetchall()
        return [_row_to_episode(row) for row in rows]

    def clear_project(self, project_hash: str) -> int:
        """Delete every episode of a project; returns how many were removed"""
        with self._write_transaction() as conn:
            conn.execute(
                """
                UPDATE raw_events SET episode_id = NULL
                WHERE episode_id IN (SELECT id FROM episodes WHERE project_hash = ?)
            """,
                (project_hash,),
            )
            cursor = conn.execute("DELETE FROM episodes WHERE project_hash = ?", (project_hash,))
            removed = cursor.rowcount
        _log(f"Cleared project {project_hash} ({removed} episodes)")
        return removed

    def stats(self) -> Dict:
        """Get memory statistics"""
        total_episodes = self.conn.execute("SELECT COUNT(*) FROM episodes").fetchone()[0]
        total_events = self.conn.execute("SELECT COUNT(*) FROM raw_events").fetchone()[0]
        projects = self.conn.execute(
            "SELECT COUNT(DISTINCT project_hash) FROM episodes"
        ).fetchone()[0]
        return {
            "total_episodes": total_episodes,
            "total_events": total_events,
            "projects": projects,
        }

    # -------------------------------------------------------------------------
    # Raw events
    # -------------------------------------------------------------------------

    def insert_raw_event(
        self, event: WindowEvent, episode_id: Optional[int] = None, settled: bool = False
    ) -> int:
        cursor = self.conn.execute(
            """
            INSERT INTO raw_events (
                episode_id, timestamp, cwd, git_branch, command,
                exit_code, stderr, stdout_truncated, session_id, settled
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
            (
                episode_id,
                event.timestamp,
                event.cwd,
                event.git_branch,
                event.command,
                event.exit_code,
                event.stderr,
                event.stdout_truncated,
                event.session_id,
                1 if settled else 0,
            ),
        )
        return cursor.lastrowid

    def link_raw_events(self, event_ids: Sequence[int], episode_id: int):
        self.conn.executemany(
            "UPDATE raw_events SET episode_id = ? WHERE id = ?",
            [(episode_id, event_id) for event_id in event_ids],
        )

    def claim_event(self, event_id: int) -> bool:
        """
        Mark one pending event settled unless another session already did

        Returns:
            True when this call performed the transition
        """
        cursor = self.conn.execute(
            "UPDATE raw_events SET settled = 1 WHERE id = ? AND settled = 0", (event_id,)
        )
        return cursor.rowcount == 1

    def release_claim(self, event_id: int):
        self.conn.execute("UPDATE raw_events SET settled = 0 WHERE id = ?", (event_id,))

    def get_raw_events_for_episode(self, episode_id: int) -> List[RawEvent]:
        rows = self.conn.execute(
            "SELECT * FROM raw_events WHERE episode_id = ? ORDER BY timestamp ASC, id ASC",
            (episode_id,),
        ).fetchall()
        return [_row_to_raw_event(row) for row in rows]

    def get_recent_events_for_directory(self, cwd: str, since: float) -> List[RawEvent]:
        """Events in a directory strictly after a timestamp, oldest first"""
        rows = self.conn.execute(
            """
            SELECT * FROM raw_events
            WHERE cwd = ? AND timestamp > ?
            ORDER BY timestamp ASC, id ASC
        """,
            (cwd, since),
        ).fetchall()
        return [_row_to_raw_event(row) for row in rows]

    def get_unsettled_events(self, before: float, cwd: Optional[str] = None) -> List[RawEvent]:
        """Events whose extraction window has not been evaluated yet, oldest first"""
        if cwd is None:
            rows = self.conn.execute(
                """
                SELECT * FROM raw_events
                WHERE settled = 0 AND timestamp <= ?
                ORDER BY timestamp ASC, id ASC
            """,
                (before,),
            ).fetchall()
        else:
            rows = self.conn.execute(
                """
                SELECT * FROM raw_events
                WHERE settled = 0 AND cwd = ? AND timestamp <= ?
                ORDER BY timestamp ASC, id ASC
            """,
                (cwd, before),
            ).fetchall()
        return [_row_to_raw_event(row) for row in rows]

    def get_last_event_for_command(
        self,
        cwd: str,
        command: str,
        within_hours: float = REPEAT_WINDOW_HOURS,
        now: Optional[float] = None,
    ) -> Optional[RawEvent]:
        since = (time.time() if now is None else now) - within_hours * 3600
        row = self.conn.execute(
            """
            SELECT * FROM raw_events
            WHERE cwd = ? AND command = ? AND timestamp > ?
            ORDER BY timestamp DESC, id DESC
            LIMIT 1
        """,
            (cwd, command, since),
        ).fetchone()
        return _row_to_raw_event(row) if row else None


# =============================================================================
# EPISODE EXTRACTOR
# =============================================================================


def build_fix_sequence(following_events: Sequence[WindowEvent]) -> str:
    """Successful commands after the failure, in order, at most five"""
    fix_commands = [
        e.command for e in following_events if e.exit_code == 0 and e.command.strip()
    ][:MAX_FIX_COMMANDS]
    return FIX_SEPARATOR.join(fix_commands) or UNKNOWN_FIX


class EpisodeExtractor:
    """Turns a failure and the commands that followed it into an episode"""

    def __init__(self, store: EpisodeStore, embedder=None, clock=time.time):
        self.store = store
        self.embedder = embedder if embedder is not None else GeminiEmbedder()
        self.clock = clock

    def extract(
        self, error_event: WindowEvent, following_events: Sequence[WindowEvent]
    ) -> Optional[Episode]:
        """
        Learn from one failure window

        Args:
            error_event: The failing command
            following_events: Commands in the same directory within
                EXTRACTION_WINDOW_SECONDS after it, oldest first

        Returns:
            The newly stored episode, or None when nothing was observed
            after the failure or the failure is a recurrence of a known
            episode (whose counter is bumped instead)
        """
        if not following_events:
            return None

        problem_signature = extract_problem_signature(error_event.stderr, error_event.command)
        project_hash = hash_project_path(error_event.cwd)
        now = self.clock()

        existing = self.store.find_episode(project_hash, problem_signature)
        if existing is not None:
            self.store.record_occurrence(existing.id, now)
            _log(
                f"Recurrence of episode {existing.id} "
                f"(count={existing.occurrence_count + 1}): {problem_signature}"
            )
            return None

        fix_sequence = build_fix_sequence(following_events)
        keywords = extract_keywords(
            f"{error_event.command} {error_event.stderr} {fix_sequence}"
        )

        episode = Episode(
            project_hash=project_hash,
            directory=error_event.cwd,
            git_branch=error_event.git_branch,
            problem_summary=problem_signature,
            environment=get_environment(),
            fix_sequence=fix_sequence,
            keywords=keywords,
            embedding=None,
            first_seen=error_event.timestamp,
            last_seen=now,
            occurrence_count=1,
        )
        episode.embedding = self.embedder.embed(embedding_text(episode))

        episode_id, created = self.store.insert_episode(episode)
        if not created:
            # Another session stored the same signature after our lookup
            _log(f"Merged concurrent first occurrence into episode {episode_id}")
            return None
        episode.id = episode_id

        self._store_window(episode_id, [error_event, *following_events])
        _log(
            f"Stored episode {episode_id} (project={project_hash}, "
            f"embedded={episode.embedding is not None}): {problem_signature}"
        )
        return episode

    def _store_window(self, episode_id: int, events: Sequence[WindowEvent]):
        """Tie every event of the window to the episode, recording new ones"""
        known_ids = []
        for event in events:
            if isinstance(event, RawEvent) and event.id is not None:
                known_ids.append(event.id)
            else:
                self.store.insert_raw_event(event, episode_id=episode_id, settled=True)
        if known_ids:
            self.store.link_raw_events(known_ids, episode_id)


# =============================================================================
# RETRIEVAL ORCHESTRATOR
# =============================================================================


def should_retrieve(context: RetrievalContext) -> bool:
    """Recall only on a failed command or an error marker in stderr"""
    if context.exit_code != 0:
        return True
    return contains_error_marker(context.stderr)


def format_retrieval_result(result: RetrievalResult) -> str:
    episode = result.episode
    date_str = datetime.fromtimestamp(episode.last_seen).strftime("%Y-%m-%d")
    lines = [
        "💭 You hit something similar before:",
        "",
        f"Last time ({date_str}):",
        f"- Problem: {episode.problem_summary}",
        f"- Fix: {episode.fix_sequence}",
        "",
        f"Occurrences: {episode.occurrence_count}",
        f"Confidence: {result.confidence * 100:.0f}%",
    ]
    return "\n".join(lines)


def suggest_next_step(result: RetrievalResult) -> Optional[str]:
    commands = result.episode.fix_commands
    return commands[0] if commands else None


def summarize_episode(episode: Episode) -> str:
    date_str = datetime.fromtimestamp(episode.last_seen).strftime("%Y-%m-%d")
    return "\n".join([
        f"Problem: {episode.problem_summary}",
        f"Directory: {episode.directory}",
        f"Fix: {episode.fix_sequence}",
        f"Seen: {date_str} ({episode.occurrence_count} times)",
    ])


class Retriever:
    """Scores stored episodes against a live failure or a search query"""

    def __init__(self, store: EpisodeStore, embedder=None, threshold: float = CONFIDENCE_THRESHOLD):
        self.store = store
        self.embedder = embedder if embedder is not None else GeminiEmbedder()
        self.threshold = threshold

    def retrieve_similar_episodes(
        self, context: RetrievalContext, max_results: int = 3
    ) -> List[RetrievalResult]:
        """
        Rank the project's episodes against a live failure

        Args:
            context: The failure being looked up
            max_results: Number of results to keep

        Returns:
            Results at or above the confidence threshold, best first
        """
        episodes = self.store.get_episodes_by_project(context.project_hash)
        if not episodes:
            return []

        query_embedding = self.embedder.embed(
            f"Error: {context.stderr}\nCommand: {context.command}", task_type="retrieval_query"
        )

        results = []
        for episode in episodes:
            similarity = episode_similarity(query_embedding, episode, context)
            command_similarity = text_similarity(episode.problem_summary, context.stderr)
            confidence = calculate_confidence(
                similarity, episode.project_hash == context.project_hash, command_similarity
            )
            if confidence >= self.threshold:
                results.append(RetrievalResult(episode, similarity, confidence))

        results.sort(key=lambda r: r.confidence, reverse=True)
        _log(
            f"Retrieval for '{context.command[:50]}': {len(episodes)} candidates, "
            f"{len(results)} above threshold"
        )
        return results[:max_results]

    def retrieve_and_suggest(self, context: RetrievalContext) -> Suggestion:
        if not should_retrieve(context):
            return NO_SUGGESTION

        results = self.retrieve_similar_episodes(context, max_results=1)
        if not results:
            return NO_SUGGESTION

        top_result = results[0]
        return Suggestion(
            message=format_retrieval_result(top_result),
            suggested_command=suggest_next_step(top_result),
        )

    def search_memory(self, query: str, max_results: int = 5) -> List[Episode]:
        """Substring search first; semantic search only when that finds nothing"""
        episodes = self.store.search_episodes_by_text(query, max_results)
        if episodes:
            return episodes

        query_embedding = self.embedder.embed(query, task_type="retrieval_query")
        if query_embedding is None:
            return []

        scored = [
            (cosine_similarity(query_embedding, episode.embedding), episode)
            for episode in self.store.get_episodes_with_embeddings()
        ]
        scored.sort(key=lambda pair: pair[0], reverse=True)
        _log(f"Semantic search: '{query[:50]}' ranked {len(scored)} episodes")
        return [episode for _, episode in scored[:max_results]]


# =============================================================================
# EVENT CAPTURE
# =============================================================================


def get_git_branch(cwd: str) -> Optional[str]:
    """Current branch of the repository at cwd, or None"""
    try:
        result = subprocess.run(
            ["git", "rev-parse", "--abbrev-ref", "HEAD"],
            cwd=cwd,
            capture_output=True,
            text=True,
            timeout=1,
        )
    except (OSError, subprocess.SubprocessError):
        return None
    if result.returncode != 0:
        return None
    return result.stdout.strip() or None


def default_session_id() -> str:
    return os.getenv("GHOSTLY_SESSION_ID") or f"{socket.gethostname()}-{os.getpid()}"


def capture_event(
    command: str,
    exit_code: int,
    stderr: str = "",
    stdout: str = "",
    cwd: Optional[str] = None,
    session_id: Optional[str] = None,
    timestamp: Optional[float] = None,
) -> TerminalEvent:
    """Build a terminal event from the current shell state"""
    cwd = cwd or os.getcwd()
    return TerminalEvent.create(
        command=command,
        exit_code=exit_code,
        cwd=cwd,
        stderr=stderr,
        stdout=stdout,
        session_id=session_id or default_session_id(),
        git_branch=get_git_branch(cwd),
        timestamp=timestamp,
    )


class EventQueue:
    """FIFO of captured events waiting to be processed"""

    def __init__(self):
        self._events = deque()

    def __len__(self):
        return len(self._events)

    def submit(self, event: TerminalEvent):
        self._events.append(event)

    def drain(self) -> Iterator[TerminalEvent]:
        while self._events:
            yield self._events.popleft()


class GhostlyMemory:
    """Record, learn, and recall, one event at a time"""

    def __init__(self, store: EpisodeStore, embedder=None, clock=time.time):
        self.store = store
        self.embedder = embedder if embedder is not None else GeminiEmbedder()
        self.clock = clock
        self.extractor = EpisodeExtractor(store, self.embedder, clock)
        self.retriever = Retriever(store, self.embedder)
        self.queue = EventQueue()

    def submit(self, event: TerminalEvent):
        self.queue.submit(event)

    def drain(self) -> List[ProcessOutcome]:
        """Process every queued event in submission order"""
        return [self.process_event(event) for event in self.queue.drain()]

    def process_event(self, event: TerminalEvent) -> ProcessOutcome:
        """
        Record an event, learn from closed failure windows, then recall

        Raises:
            ValueError: the event has no working directory
        """
        if not event.cwd:
            raise ValueError("terminal event has no working directory")

        # Only failures with a command open an extraction window
        pending = bool(event.command.strip()) and is_error(event.stderr, event.exit_code)
        self.store.insert_raw_event(event, settled=not pending)

        new_episodes = self.settle(event.cwd, now=event.timestamp)
        suggestion = self.retriever.retrieve_and_suggest(RetrievalContext.from_event(event))
        if suggestion.should_show:
            _log(f"Suggestion shown for '{event.command[:50]}'")
        return ProcessOutcome(event=event, new_episodes=new_episodes, suggestion=suggestion)

    def settle(self, cwd: Optional[str], now: Optional[float] = None, force: bool = False) -> List[Episode]:
        """
        Extract episodes from failures whose window has closed

        Args:
            cwd: Directory to settle, or None for every directory
            now: Reference time (defaults to the clock)
            force: Settle open windows too, using what has been seen so far

        Returns:
            Newly created episodes
        """
        now = self.clock() if now is None else now
        cutoff = now if force else now - EXTRACTION_WINDOW_SECONDS

        created = []
        for error_event in self.store.get_unsettled_events(cutoff, cwd=cwd):
            # Another session may be extracting the same failure
            if not self.store.claim_event(error_event.id):
                continue
            window_end = error_event.timestamp + EXTRACTION_WINDOW_SECONDS
            following = [
                e
                for e in self.store.get_recent_events_for_directory(error_event.cwd, error_event.timestamp)
                if e.timestamp <= window_end and e.id != error_event.id
            ]
            try:
                episode = self.extractor.extract(error_event, following)
            except Exception:
                self.store.release_claim(error_event.id)
                raise
            if episode is not None:
                created.append(episode)
        return created

    def flush(self, cwd: Optional[str] = None) -> List[Episode]:
        return self.settle(cwd, force=True)

    def was_command_repeated(self, cwd: str, command: str) -> bool:
        """Same command in the same directory within REPEAT_WINDOW_HOURS"""
        last = self.store.get_last_event_for_command(cwd, command, now=self.clock())
        return last is not None


def generate_shell_hook() -> str:
    """Shell snippet that reports every command to `ghostly capture`"""
    return """#!/bin/bash
# Ghostly Memory - Shell Hook
# Add to your ~/.bashrc or ~/.zshrc

ghostly_track() {
  local exit_code=$?
  local last_cmd
  last_cmd="$(fc -ln -1 2>/dev/null | sed 's/^[[:space:]]*//')"

  # Skip if empty or our own commands
  [[ -z "$last_cmd" ]] && return
  [[ "$last_cmd" == ghostly* ]] && return

  ghostly capture \\
    --command "$last_cmd" \\
    --exit "$exit_code" \\
    --cwd "$PWD" \\
    --session "$$"
}

# For bash
# PROMPT_COMMAND="ghostly_track;$PROMPT_COMMAND"

# For zsh
# autoload -Uz add-zsh-hook
# add-zsh-hook precmd ghostly_track
"""


# =============================================================================
# CLI
# =============================================================================

USAGE = """Usage: ghostly <command> [args...]

Commands:
  capture --command C --exit N [--cwd D] [--session S] [--stderr T] [--stdout T]
                           - Record a terminal event and show a suggestion if any
  query <text> [-n N]      - Search memory by text
  recent [-n N]            - Show recent episodes
  show [--project PATH]    - Show episodes for a project (default: cwd)
  stats                    - Show memory statistics
  clear [--project PATH]   - Clear memory for a project (default: cwd)
  flush [--cwd D]          - Extract episodes from pending failures now
  hook                     - Print the shell hook script
  version                  - Show version"""


def _parse_options(args: List[str], value_flags: Dict[str, str]) -> Tuple[Dict[str, str], List[str]]:
    """Split args into {option: value} for the known flags and positionals"""
    options: Dict[str, str] = {}
    positional: List[str] = []
    i = 0
    while i < len(args):
        name = value_flags.get(args[i])
        if name and i + 1 < len(args):
            options[name] = args[i + 1]
            i += 2
        else:
            positional.append(args[i])
            i += 1
    return options, positional


def _parse_limit(options: Dict[str, str], default: int) -> Optional[int]:
    """Result count from -n; prints a message and returns None when invalid"""
    raw = options.get("limit")
    if raw is None:
        return default
    try:
        limit = int(raw)
    except ValueError:
        limit = 0
    if limit < 1:
        print(f"Invalid result count: {raw}")
        return None
    return limit


def _print_episode_list(episodes: List[Episode], show_keywords: bool = False):
    for index, episode in enumerate(episodes, 1):
        # first summary line is the problem itself
        details = summarize_episode(episode).splitlines()[1:]
        if show_keywords:
            details.insert(-1, f"Keywords: {', '.join(episode.keywords)}")
        print(f"{index}. {episode.problem_summary}")
        for line in details:
            print(f"   {line}")
        print()


def main(argv: Optional[List[str]] = None) -> int:
    """CLI interface for Ghostly Memory"""
    args = sys.argv[1:] if argv is None else list(argv)

    if not args:
        print(USAGE)
        return 1

    command, rest = args[0], args[1:]

    if command == "version":
        print(GHOSTLY_VERSION)
        return 0

    if command == "hook":
        print(generate_shell_hook())
        return 0

    if command not in {"capture", "query", "recent", "show", "stats", "clear", "flush"}:
        print(f"Unknown command: {command}")
        print(USAGE)
        return 1

    try:
        store = EpisodeStore()
    except StoreUnavailableError as e:
        print(f"[!] {e}")
        return 1

    with store:
        memory = GhostlyMemory(store)

        if command == "capture":
            options, _ = _parse_options(
                rest,
                {
                    "--command": "command", "-c": "command",
                    "--exit": "exit", "-e": "exit",
                    "--cwd": "cwd", "-d": "cwd",
                    "--session": "session", "-s": "session",
                    "--stderr": "stderr",
                    "--stdout": "stdout",
                },
            )
            if "command" not in options or "exit" not in options:
                print("Usage: ghostly capture --command C --exit N [--cwd D] [--session S]")
                return 1
            try:
                exit_code = int(options["exit"])
            except ValueError:
                print(f"Invalid exit code: {options['exit']}")
                return 1

            memory.submit(
                capture_event(
                    options["command"],
                    exit_code,
                    stderr=options.get("stderr", ""),
                    stdout=options.get("stdout", ""),
                    cwd=options.get("cwd"),
                    session_id=options.get("session"),
                )
            )
            for outcome in memory.drain():
                if outcome.suggestion.should_show:
                    print(outcome.suggestion.message)
                    if outcome.suggestion.suggested_command:
                        print("\nSuggested next step:")
                        print(f"  > {outcome.suggestion.suggested_command}")
                if outcome.new_episodes:
                    print(f"Stored {len(outcome.new_episodes)} new episode(s) in memory.")

        elif command == "query":
            options, positional = _parse_options(rest, {"-n": "limit", "--max-results": "limit"})
            if not positional:
                print("Usage: ghostly query <text> [-n N]")
                return 1
            limit = _parse_limit(options, 5)
            if limit is None:
                return 1
            episodes = memory.retriever.search_memory(" ".join(positional), limit)
            if not episodes:
                print("No matching memories found.")
                return 0
            print(f"\nFound {len(episodes)} relevant memories:\n")
            _print_episode_list(episodes)

        elif command == "recent":
            options, _ = _parse_options(rest, {"-n": "limit", "--max-results": "limit"})
            limit = _parse_limit(options, 10)
            if limit is None:
                return 1
            episodes = store.get_recent_episodes(limit)
            if not episodes:
                print("No memories yet. Start using your terminal!")
                return 0
            print("Recent memories:\n")
            _print_episode_list(episodes)

        elif command == "show":
            options, _ = _parse_options(rest, {"--project": "project", "-p": "project"})
            project_path = options.get("project") or os.getcwd()
            episodes = store.get_episodes_by_project(hash_project_path(project_path))
            if not episodes:
                print(f"No memories for: {project_path}")
                return 0
            print(f"Memories for: {project_path}\n")
            _print_episode_list(episodes, show_keywords=True)

        elif command == "stats":
            print(json.dumps(store.stats(), indent=2))

        elif command == "clear":
            options, _ = _parse_options(rest, {"--project": "project", "-p": "project"})
            project_path = options.get("project") or os.getcwd()
            removed = store.clear_project(hash_project_path(project_path))
            print(f"Cleared memory for: {project_path} ({removed} episodes)")

        elif command == "flush":
            options, _ = _parse_options(rest, {"--cwd": "cwd", "-d": "cwd"})
            episodes = memory.flush(options.get("cwd"))
            print(f"Stored {len(episodes)} new episode(s) in memory.")

    return 0


if __name__ == "__main__":
    sys.exit(main())
