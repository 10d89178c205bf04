# votestream/store.py
import logging
import sqlite3
import uuid
from typing import Dict, List, Optional

from votestream.errors import PersistFailure
from votestream.models import Candidate, VoteEvent

logger = logging.getLogger(__name__)


class RecordStore:
    """
    System of record for votes and candidates, backed by SQLite.

    Votes are keyed by (candidate_id, vote_id): writing the same VoteEvent
    twice overwrites one row, and two votes in the same hour never collide.
    """

    def __init__(self, db_path: str):
        self.db_path = db_path
        self._init_db()
        logger.info(f"Record store ready at {db_path}")

    def _get_db_connection(self):
        return sqlite3.connect(self.db_path, check_same_thread=False)

    def _init_db(self):
        conn = self._get_db_connection()
        try:
            cursor = conn.cursor()
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS candidates (
                    id TEXT PRIMARY KEY,
                    name TEXT NOT NULL
                );
            """)
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS votes (
                    candidate_id TEXT NOT NULL,
                    vote_id TEXT NOT NULL,
                    time_bucket TEXT NOT NULL,
                    PRIMARY KEY (candidate_id, vote_id)
                );
            """)
            cursor.execute(
                "CREATE INDEX IF NOT EXISTS idx_votes_bucket ON votes (candidate_id, time_bucket)"
            )
            conn.commit()
        finally:
            conn.close()

    # --- Votes ---

    def save_vote(self, event: VoteEvent) -> None:
        conn = None
        try:
            conn = self._get_db_connection()
            conn.execute(
                "INSERT OR REPLACE INTO votes (candidate_id, vote_id, time_bucket) VALUES (?, ?, ?)",
                (str(event.candidate_id), str(event.vote_id), event.time_bucket),
            )
            conn.commit()
        except sqlite3.Error as exc:
            raise PersistFailure(f"could not persist vote {event.vote_id}: {exc}") from exc
        finally:
            if conn is not None:
                conn.close()

    def get_vote(self, vote_id: uuid.UUID) -> Optional[VoteEvent]:
        conn = self._get_db_connection()
        try:
            row = conn.execute(
                "SELECT vote_id, candidate_id, time_bucket FROM votes WHERE vote_id = ?",
                (str(vote_id),),
            ).fetchone()
        finally:
            conn.close()
        if row is None:
            return None
        return VoteEvent(vote_id=row[0], candidate_id=row[1], time_bucket=row[2])

    def list_votes(self, candidate_id: Optional[uuid.UUID] = None) -> List[VoteEvent]:
        query = "SELECT vote_id, candidate_id, time_bucket FROM votes"
        params = []
        if candidate_id:
            query += " WHERE candidate_id = ?"
            params.append(str(candidate_id))
        query += " ORDER BY time_bucket, vote_id"

        conn = self._get_db_connection()
        try:
            rows = conn.execute(query, params).fetchall()
        finally:
            conn.close()
        return [VoteEvent(vote_id=row[0], candidate_id=row[1], time_bucket=row[2]) for row in rows]

    def count_votes(self) -> int:
        conn = self._get_db_connection()
        try:
            return conn.execute("SELECT COUNT(*) FROM votes").fetchone()[0]
        finally:
            conn.close()

    def count_by_candidate(self) -> Dict[str, int]:
        """Full scan used to rebuild the aggregate counters."""
        conn = self._get_db_connection()
        try:
            rows = conn.execute(
                "SELECT candidate_id, COUNT(*) FROM votes GROUP BY candidate_id"
            ).fetchall()
        finally:
            conn.close()
        return {row[0]: row[1] for row in rows}

    # --- Candidates ---

    def insert_candidate(self, candidate: Candidate) -> None:
        conn = None
        try:
            conn = self._get_db_connection()
            conn.execute(
                "INSERT INTO candidates (id, name) VALUES (?, ?)",
                (str(candidate.id), candidate.name),
            )
            conn.commit()
        except sqlite3.Error as exc:
            raise PersistFailure(f"could not persist candidate {candidate.id}: {exc}") from exc
        finally:
            if conn is not None:
                conn.close()

    def get_candidate(self, candidate_id: uuid.UUID) -> Optional[Candidate]:
        conn = self._get_db_connection()
        try:
            row = conn.execute(
                "SELECT id, name FROM candidates WHERE id = ?", (str(candidate_id),)
            ).fetchone()
        finally:
            conn.close()
        return Candidate(id=row[0], name=row[1]) if row else None

    def list_candidates(self) -> List[Candidate]:
        conn = self._get_db_connection()
        try:
            rows = conn.execute("SELECT id, name FROM candidates ORDER BY name").fetchall()
        finally:
            conn.close()
        return [Candidate(id=row[0], name=row[1]) for row in rows]
