"""Solution Library - persistent, fuzzy-matched cache of recovery solutions.

Solutions are keyed by an ErrorFingerprint (category + normalized selector
and url signatures). Lookups rank by similarity rather than exact key,
since signatures recur with small textual variation between runs.
"""
import json
import re
import sqlite3
import threading
from abc import ABC, abstractmethod
from contextlib import closing
from datetime import datetime, timezone
from difflib import SequenceMatcher
from pathlib import Path
from typing import Dict, List, Optional
from urllib.parse import urlparse

from intentflow.models.solution import (
    ErrorCategory,
    ErrorFingerprint,
    RankedSolution,
    Solution,
    SolutionUsage,
)
from intentflow.utils.config import config
from intentflow.utils.logger import setup_logger


RECENCY_WINDOW_SECONDS = 7 * 24 * 3600  # recency decays to zero over a week


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# =============================================================================
# FINGERPRINTS
# =============================================================================

def normalize_selector(selector: Optional[str]) -> str:
    """Lower-case, unify quote style, digits -> N, collapse whitespace."""
    if not selector:
        return ""
    text = selector.strip().lower()
    text = text.replace("'", '"')
    text = re.sub(r"\d+", "N", text)
    return re.sub(r"\s+", " ", text)


def normalize_url(url: Optional[str]) -> str:
    """Reduce a URL to host + path shape; ids and digits are generalized."""
    if not url:
        return ""
    parsed = urlparse(url if "://" in url else f"//{url}")
    host = (parsed.hostname or "").lower()
    if host.startswith("www."):
        host = host[4:]
    segments = []
    for segment in parsed.path.split("/"):
        if not segment:
            continue
        if re.fullmatch(r"[0-9a-fA-F-]{8,}", segment):
            segments.append(":id")
        else:
            segments.append(re.sub(r"\d+", "N", segment.lower()))
    return host + ("/" + "/".join(segments) if segments else "")


def fingerprint_for(
    category: ErrorCategory,
    selector: Optional[str] = None,
    url: Optional[str] = None
) -> ErrorFingerprint:
    """Build the normalized fingerprint for a failure."""
    return ErrorFingerprint(
        category=category,
        selector_signature=normalize_selector(selector),
        url_signature=normalize_url(url),
    )


def signature_similarity(a: str, b: str) -> float:
    """Edit-distance style ratio in [0, 1]; two empty signatures are identical."""
    if not a and not b:
        return 1.0
    if not a or not b:
        return 0.0
    return SequenceMatcher(None, a, b).ratio()


def recency_score(solution: Solution, now: Optional[datetime] = None) -> float:
    now = now or _utcnow()
    reference = _aware(solution.usage.last_used) or _aware(solution.created_at)
    age = (now - reference).total_seconds()
    return max(0.0, 1.0 - age / RECENCY_WINDOW_SECONDS)


# =============================================================================
# STORES
# =============================================================================

class SolutionStore(ABC):
    """
    Persistence backend for solutions.

    Usage counters are updated with `increment()`, which must be atomic per
    entry; implementations never take a store-wide lock for it.
    """

    @abstractmethod
    def insert(self, solution: Solution) -> Solution:
        """Insert a solution. If one with the same fingerprint and code exists, return it instead."""

    @abstractmethod
    def get(self, solution_id: str) -> Optional[Solution]: ...

    @abstractmethod
    def candidates(self, category: ErrorCategory) -> List[Solution]:
        """All solutions for a category (similarity ranking happens in the library)."""

    @abstractmethod
    def increment(self, solution_id: str, success: bool, when: datetime) -> bool:
        """Atomically bump success_count or failure_count and set last_used."""

    @abstractmethod
    def delete(self, solution_ids: List[str]) -> int: ...

    @abstractmethod
    def count(self) -> int: ...

    @abstractmethod
    def all(self) -> List[Solution]: ...


class InMemorySolutionStore(SolutionStore):
    """Process-local store with per-entry locks."""

    def __init__(self):
        self._solutions: Dict[str, Solution] = {}
        self._entry_locks: Dict[str, threading.Lock] = {}
        self._index_lock = threading.Lock()  # guards dict membership only

    def insert(self, solution: Solution) -> Solution:
        with self._index_lock:
            for existing in self._solutions.values():
                if existing.fingerprint.key == solution.fingerprint.key and existing.code == solution.code:
                    return existing.model_copy(deep=True)
            self._solutions[solution.id] = solution.model_copy(deep=True)
            self._entry_locks[solution.id] = threading.Lock()
        return solution

    def get(self, solution_id: str) -> Optional[Solution]:
        solution = self._solutions.get(solution_id)
        lock = self._entry_locks.get(solution_id)
        if solution is None or lock is None:
            return None
        with lock:
            return solution.model_copy(deep=True)

    def candidates(self, category: ErrorCategory) -> List[Solution]:
        with self._index_lock:
            ids = [sid for sid, s in self._solutions.items() if s.fingerprint.category is category]
        return [s for s in (self.get(sid) for sid in ids) if s is not None]

    def increment(self, solution_id: str, success: bool, when: datetime) -> bool:
        solution = self._solutions.get(solution_id)
        lock = self._entry_locks.get(solution_id)
        if solution is None or lock is None:
            return False
        with lock:
            if success:
                solution.usage.success_count += 1
            else:
                solution.usage.failure_count += 1
            solution.usage.last_used = when
        return True

    def delete(self, solution_ids: List[str]) -> int:
        removed = 0
        with self._index_lock:
            for sid in solution_ids:
                if self._solutions.pop(sid, None) is not None:
                    self._entry_locks.pop(sid, None)
                    removed += 1
        return removed

    def count(self) -> int:
        return len(self._solutions)

    def all(self) -> List[Solution]:
        with self._index_lock:
            ids = list(self._solutions)
        return [s for s in (self.get(sid) for sid in ids) if s is not None]


class SQLiteSolutionStore(SolutionStore):
    """SQLite-backed store; one connection per call, WAL journal, atomic UPDATE counters."""

    def __init__(self, db_path: Optional[Path] = None):
        self.db_path = Path(db_path) if db_path else config.solution_db_path
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._ensure_schema()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self.db_path), timeout=30)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA synchronous=NORMAL")
        return conn

    def _ensure_schema(self) -> None:
        with closing(self._connect()) as conn, conn:
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS solutions (
                    id TEXT PRIMARY KEY,
                    fingerprint_key TEXT NOT NULL,
                    category TEXT NOT NULL,
                    selector_signature TEXT NOT NULL,
                    url_signature TEXT NOT NULL,
                    strategy TEXT NOT NULL,
                    code TEXT NOT NULL,
                    confidence REAL NOT NULL,
                    estimated_success_rate REAL NOT NULL,
                    risk_level TEXT NOT NULL,
                    explanation TEXT NOT NULL,
                    source TEXT NOT NULL,
                    success_count INTEGER NOT NULL DEFAULT 0,
                    failure_count INTEGER NOT NULL DEFAULT 0,
                    last_used TEXT,
                    created_at TEXT NOT NULL,
                    UNIQUE (fingerprint_key, code)
                );
                CREATE INDEX IF NOT EXISTS idx_solutions_category
                    ON solutions(category);
                """
            )

    @staticmethod
    def _row_to_solution(row: sqlite3.Row) -> Solution:
        return Solution(
            id=row["id"],
            fingerprint=ErrorFingerprint(
                category=ErrorCategory(row["category"]),
                selector_signature=row["selector_signature"],
                url_signature=row["url_signature"],
            ),
            strategy=row["strategy"],
            code=row["code"],
            confidence=row["confidence"],
            estimated_success_rate=row["estimated_success_rate"],
            risk_level=row["risk_level"],
            explanation=row["explanation"],
            source=row["source"],
            usage=SolutionUsage(
                success_count=row["success_count"],
                failure_count=row["failure_count"],
                last_used=datetime.fromisoformat(row["last_used"]) if row["last_used"] else None,
            ),
            created_at=datetime.fromisoformat(row["created_at"]),
        )

    def insert(self, solution: Solution) -> Solution:
        fp = solution.fingerprint
        with closing(self._connect()) as conn, conn:
            conn.execute(
                """
                INSERT OR IGNORE INTO solutions (
                    id, fingerprint_key, category, selector_signature, url_signature,
                    strategy, code, confidence, estimated_success_rate, risk_level,
                    explanation, source, success_count, failure_count, last_used, created_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    solution.id,
                    fp.key,
                    fp.category.value,
                    fp.selector_signature,
                    fp.url_signature,
                    solution.strategy,
                    solution.code,
                    solution.confidence,
                    solution.estimated_success_rate,
                    solution.risk_level,
                    solution.explanation,
                    solution.source,
                    solution.usage.success_count,
                    solution.usage.failure_count,
                    solution.usage.last_used.isoformat() if solution.usage.last_used else None,
                    solution.created_at.isoformat(),
                ),
            )
            row = conn.execute(
                "SELECT * FROM solutions WHERE fingerprint_key = ? AND code = ?",
                (fp.key, solution.code),
            ).fetchone()
        return self._row_to_solution(row) if row else solution

    def get(self, solution_id: str) -> Optional[Solution]:
        with closing(self._connect()) as conn:
            row = conn.execute("SELECT * FROM solutions WHERE id = ?", (solution_id,)).fetchone()
        return self._row_to_solution(row) if row else None

    def candidates(self, category: ErrorCategory) -> List[Solution]:
        with closing(self._connect()) as conn:
            rows = conn.execute(
                "SELECT * FROM solutions WHERE category = ?",
                (category.value,),
            ).fetchall()
        return [self._row_to_solution(r) for r in rows]

    def increment(self, solution_id: str, success: bool, when: datetime) -> bool:
        column = "success_count" if success else "failure_count"
        with closing(self._connect()) as conn, conn:
            cur = conn.execute(
                f"UPDATE solutions SET {column} = {column} + 1, last_used = ? WHERE id = ?",
                (when.isoformat(), solution_id),
            )
            return cur.rowcount > 0

    def delete(self, solution_ids: List[str]) -> int:
        if not solution_ids:
            return 0
        with closing(self._connect()) as conn, conn:
            cur = conn.executemany("DELETE FROM solutions WHERE id = ?", [(sid,) for sid in solution_ids])
            return int(cur.rowcount or 0)

    def count(self) -> int:
        with closing(self._connect()) as conn:
            return int(conn.execute("SELECT COUNT(*) FROM solutions").fetchone()[0])

    def all(self) -> List[Solution]:
        with closing(self._connect()) as conn:
            rows = conn.execute("SELECT * FROM solutions ORDER BY created_at").fetchall()
        return [self._row_to_solution(r) for r in rows]


# =============================================================================
# LIBRARY
# =============================================================================

class SolutionLibrary:
    """
    Similarity-ranked solution cache that learns from outcomes.

    Usage:
        library = SolutionLibrary(SQLiteSolutionStore())
        fp = fingerprint_for(ErrorCategory.ELEMENT_NOT_FOUND, "#submit", "https://example.com/login")
        hits = library.find(fp)
        library.record_outcome(hits[0].solution.id, success=True)
    """

    def __init__(
        self,
        store: Optional[SolutionStore] = None,
        capacity: Optional[int] = None,
        min_similarity: Optional[float] = None,
        max_results: Optional[int] = None
    ):
        self.backend = store or InMemorySolutionStore()
        self.capacity = capacity or config.library_capacity
        self.min_similarity = config.library_min_similarity if min_similarity is None else min_similarity
        self.max_results = max_results or config.library_max_results
        self.logger = setup_logger("SolutionLibrary")

    # ----- lookup ----------------------------------------------------------

    def similarity(self, query: ErrorFingerprint, candidate: ErrorFingerprint) -> float:
        """Selector-weighted similarity of two fingerprints (0 if categories differ)."""
        if query.category is not candidate.category:
            return 0.0
        if query.key == candidate.key:
            return 1.0
        selector = signature_similarity(query.selector_signature, candidate.selector_signature)
        url = signature_similarity(query.url_signature, candidate.url_signature)
        return 0.7 * selector + 0.3 * url

    def find(self, fingerprint: ErrorFingerprint, limit: Optional[int] = None) -> List[RankedSolution]:
        """
        Solutions for the fingerprint's category, ranked by similarity.

        An exact fingerprint match always ranks first; the rest are ordered
        by similarity blended with success rate and recency.
        """
        now = _utcnow()
        ranked = []
        for solution in self.backend.candidates(fingerprint.category):
            sim = self.similarity(fingerprint, solution.fingerprint)
            exact = solution.fingerprint.key == fingerprint.key
            if not exact and sim < self.min_similarity:
                continue
            quality = 0.7 * solution.success_rate + 0.3 * recency_score(solution, now)
            rank = 0.8 * sim + 0.2 * quality
            ranked.append((exact, rank, RankedSolution(solution=solution, similarity=round(sim, 4), exact=exact)))

        ranked.sort(key=lambda item: (item[0], item[1]), reverse=True)
        results = [item[2] for item in ranked[: limit or self.max_results]]
        self.logger.debug(
            f"Library lookup {fingerprint.key}: {len(results)} hit(s)"
            + (f", top={results[0].solution.strategy} sim={results[0].similarity}" if results else "")
        )
        return results

    def get(self, solution_id: str) -> Optional[Solution]:
        return self.backend.get(solution_id)

    # ----- writes ----------------------------------------------------------

    def store(self, solution: Solution) -> Solution:
        """Persist a solution, then evict if over capacity."""
        stored = self.backend.insert(solution)
        self.logger.info(f"Stored solution {stored.id} ({stored.strategy}) for {stored.fingerprint.key}")
        self._evict_if_needed(keep=stored.id)
        return stored

    def record_outcome(self, solution_id: str, success: bool) -> bool:
        """Atomically record a reuse outcome."""
        updated = self.backend.increment(solution_id, success, _utcnow())
        if not updated:
            self.logger.warning(f"record_outcome: unknown solution {solution_id}")
        return updated

    def _evict_if_needed(self, keep: Optional[str] = None) -> int:
        """Delete the weakest solutions over capacity, never the one with id `keep`."""
        overflow = self.backend.count() - self.capacity
        if overflow <= 0:
            return 0
        now = _utcnow()
        solutions = [s for s in self.backend.all() if s.id != keep]
        # Lowest success_rate x recency first; older entries break ties
        solutions.sort(key=lambda s: (
            s.success_rate * recency_score(s, now),
            _aware(s.usage.last_used) or _aware(s.created_at)
        ))
        victims = [s.id for s in solutions[:overflow]]
        removed = self.backend.delete(victims)
        self.logger.info(f"Evicted {removed} solution(s) over capacity {self.capacity}")
        return removed

    # ----- import / export -------------------------------------------------

    def export_solutions(self, path: Path, min_success_rate: float = 0.0) -> int:
        """Write solutions with success rate >= min_success_rate to a JSON file."""
        solutions = [s for s in self.backend.all() if s.success_rate >= min_success_rate]
        payload = {
            "version": 1,
            "exported_at": _utcnow().isoformat(),
            "solutions": [s.model_dump(mode="json") for s in solutions],
        }
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w", encoding="utf-8") as f:
            json.dump(payload, f, indent=2)
        self.logger.info(f"Exported {len(solutions)} solution(s) to {path}")
        return len(solutions)

    def import_solutions(self, path: Path, min_success_rate: float = 0.0) -> int:
        """Load solutions from an export file; existing ids and duplicates are skipped."""
        with open(path, encoding="utf-8") as f:
            payload = json.load(f)

        imported = 0
        for data in payload.get("solutions", []):
            solution = Solution.model_validate(data)
            if solution.success_rate < min_success_rate or self.backend.get(solution.id):
                continue
            solution = solution.model_copy(update={"source": "imported"})
            if self.backend.insert(solution).id == solution.id:
                imported += 1

        self._evict_if_needed()
        self.logger.info(f"Imported {imported} solution(s) from {path}")
        return imported

    def get_statistics(self) -> Dict:
        solutions = self.backend.all()
        used = [s for s in solutions if s.usage.total]
        return {
            "total_solutions": len(solutions),
            "used_solutions": len(used),
            "total_successes": sum(s.usage.success_count for s in solutions),
            "total_failures": sum(s.usage.failure_count for s in solutions),
            "average_success_rate": (sum(s.success_rate for s in used) / len(used)) if used else 0.0,
            "by_category": {
                c.value: sum(1 for s in solutions if s.fingerprint.category is c)
                for c in ErrorCategory
                if any(s.fingerprint.category is c for s in solutions)
            },
        }
