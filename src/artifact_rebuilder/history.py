from __future__ import annotations

import json
import sqlite3
import threading
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from .models import Ecosystem, Target, Verdict
from .schema import strategy_to_dict


class RunIndex:
    """Read-only view of the SQLite run index."""

    def __init__(self, path: Path):
        self.path = path
        if not self.path.exists():
            raise FileNotFoundError(f"Run index {path} was not found.")

    def _connect(self) -> sqlite3.Connection:
        return sqlite3.connect(f"{self.path.resolve().as_uri()}?mode=ro", uri=True)

    def runs(self, *, limit: int = 50) -> List["Run"]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT id, benchmark_name, benchmark_hash, type, created FROM runs ORDER BY created DESC LIMIT ?",
                (limit,),
            ).fetchall()
        return [Run(*row) for row in rows]

    def rebuilds(
        self,
        *,
        run_id: Optional[str] = None,
        failed_only: bool = False,
        package: Optional[str] = None,
        limit: int = 0,
    ) -> List["Rebuild"]:
        query = f"SELECT {_REBUILD_COLUMNS} FROM rebuilds"
        clauses: List[str] = []
        params: List[Any] = []
        if run_id:
            clauses.append("run_id = ?")
            params.append(run_id)
        if failed_only:
            clauses.append("success = 0")
        if package:
            clauses.append("package = ?")
            params.append(package)
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY id"
        if limit > 0:
            query += " LIMIT ?"
            params.append(limit)
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [_row_to_rebuild(row) for row in rows]

    def summary(self, run_id: str) -> "RunSummary":
        with self._connect() as conn:
            total, successes = conn.execute(
                "SELECT COUNT(*), COALESCE(SUM(success), 0) FROM rebuilds WHERE run_id = ?",
                (run_id,),
            ).fetchone()
        return RunSummary(run_id=run_id, total=total, successes=successes)

    def top_failures(self, *, limit: int = 20, run_id: Optional[str] = None) -> List["FailureStat"]:
        query = "SELECT package, COUNT(*) AS failures FROM rebuilds WHERE success = 0"
        params: List[Any] = []
        if run_id:
            query += " AND run_id = ?"
            params.append(run_id)
        query += " GROUP BY package ORDER BY failures DESC, package LIMIT ?"
        params.append(limit)
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [FailureStat(package=row[0], failures=row[1]) for row in rows]

    def export_csv(self, path: Path, *, run_id: Optional[str] = None) -> None:
        query = f"SELECT {_REBUILD_COLUMNS} FROM rebuilds"
        params: List[Any] = []
        if run_id:
            query += " WHERE run_id = ?"
            params.append(run_id)
        query += " ORDER BY id"
        with self._connect() as conn, path.open("w", encoding="utf-8") as fh:
            cursor = conn.execute(query, params)
            headers = [col[0] for col in cursor.description]
            fh.write(",".join(headers) + "\n")
            for row in cursor.fetchall():
                fh.write(",".join(_csv_escape(str(item)) for item in row) + "\n")


class WritableRunIndex(RunIndex):
    """Run index that can also record runs and rebuild outcomes."""

    def __init__(self, path: Path):
        self.path = path
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._ensure_schema()

    def _connect(self) -> sqlite3.Connection:
        return sqlite3.connect(self.path)

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS runs (
                    id TEXT PRIMARY KEY,
                    benchmark_name TEXT,
                    benchmark_hash TEXT,
                    type TEXT,
                    created TEXT
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS rebuilds (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    run_id TEXT,
                    ecosystem TEXT,
                    package TEXT,
                    version TEXT,
                    artifact TEXT,
                    success INTEGER,
                    message TEXT,
                    strategy_json TEXT,
                    executor TEXT,
                    created TEXT
                )
                """
            )
            conn.execute("CREATE INDEX IF NOT EXISTS idx_rebuilds_run ON rebuilds(run_id)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_rebuilds_package ON rebuilds(package)")
            conn.commit()

    def write_run(self, run: "Run") -> None:
        with self._lock, self._connect() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO runs (id, benchmark_name, benchmark_hash, type, created) VALUES (?, ?, ?, ?, ?)",
                (run.id, run.benchmark_name, run.benchmark_hash, run.type, run.created),
            )
            conn.commit()

    def write_rebuild(self, rebuild: "Rebuild") -> None:
        payload = {
            "run_id": rebuild.run_id,
            "ecosystem": rebuild.ecosystem,
            "package": rebuild.package,
            "version": rebuild.version,
            "artifact": rebuild.artifact,
            "success": 1 if rebuild.success else 0,
            "message": rebuild.message,
            "strategy_json": json.dumps(rebuild.strategy or {}),
            "executor": rebuild.executor,
            "created": rebuild.created,
        }
        with self._lock, self._connect() as conn:
            conn.execute(
                """
                INSERT INTO rebuilds (
                    run_id, ecosystem, package, version, artifact,
                    success, message, strategy_json, executor, created
                )
                VALUES (
                    :run_id, :ecosystem, :package, :version, :artifact,
                    :success, :message, :strategy_json, :executor, :created
                )
                """,
                payload,
            )
            conn.commit()


@dataclass
class Run:
    id: str
    benchmark_name: str
    benchmark_hash: str
    type: str
    created: str


@dataclass
class Rebuild:
    run_id: str
    ecosystem: str
    package: str
    version: str
    artifact: str
    success: bool
    message: str
    strategy: Dict[str, Any]
    executor: str
    created: str

    @property
    def id(self) -> str:
        return self.target().id

    def target(self) -> Target:
        return Target(
            ecosystem=Ecosystem(self.ecosystem),
            package=self.package,
            version=self.version,
            artifact=self.artifact,
        )

    @classmethod
    def from_verdict(cls, verdict: Verdict, executor: str, run_id: str, created: datetime) -> "Rebuild":
        target = verdict.target
        return cls(
            run_id=run_id,
            ecosystem=target.ecosystem.value,
            package=target.package,
            version=target.version,
            artifact=target.artifact,
            success=verdict.ok,
            message=verdict.message,
            strategy=strategy_to_dict(verdict.strategy) if verdict.strategy is not None else {},
            executor=executor,
            created=created.isoformat(),
        )


@dataclass
class RunSummary:
    run_id: str
    total: int
    successes: int

    @property
    def failures(self) -> int:
        return self.total - self.successes


@dataclass
class FailureStat:
    package: str
    failures: int


_REBUILD_COLUMNS = "run_id, ecosystem, package, version, artifact, success, message, strategy_json, executor, created"


def _row_to_rebuild(row: tuple) -> Rebuild:
    (
        run_id,
        ecosystem,
        package,
        version,
        artifact,
        success,
        message,
        strategy_json,
        executor,
        created,
    ) = row
    return Rebuild(
        run_id=run_id,
        ecosystem=ecosystem,
        package=package,
        version=version,
        artifact=artifact,
        success=bool(success),
        message=message or "",
        strategy=json.loads(strategy_json or "{}"),
        executor=executor,
        created=created,
    )


def _csv_escape(value: str) -> str:
    if any(ch in value for ch in {",", '"', "\n"}):
        return '"' + value.replace('"', '""') + '"'
    return value
