"""Batch operations over recorded rebuilds, built on Pipe stages."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Iterable, List, Optional, Tuple

from .assets import Butler
from .benchmark import BenchmarkSet
from .history import Rebuild, Run, RunIndex, WritableRunIndex
from .models import AssetKind
from .pipe import CancelToken, Pipe, par_into
from .ratelimit import Ticker
from .summarize import Summarizer
from .verifier import Rebuilder

LOG = logging.getLogger(__name__)

LOG_READ_PARALLELISM = 10
SUMMARIZE_PARALLELISM = 50
UPLOAD_BYTES_LIMIT = 100_000

SUMMARY_REQUEST = "Please summarize this rebuild failure in one sentence."
CLASSIFY_REQUEST = (
    "Based on the following error summaries, please provide 1 to 5 classes of failures you think are happening."
)


@dataclass
class ClusterReport:
    summaries: List[Tuple[Rebuild, str]] = field(default_factory=list)
    classes: str = ""


@dataclass
class BenchmarkResult:
    run_id: str
    successes: int
    total: int


def _fetch_logs(butler: Butler):
    def _fetch(rebuild: Rebuild, emit) -> None:
        try:
            butler.fetch(rebuild.run_id, AssetKind.DEBUG_LOGS.for_target(rebuild.target()))
        except FileNotFoundError as exc:
            LOG.warning("Downloading logs for %s failed: %s", rebuild.id, exc)
            return
        emit(rebuild)

    return _fetch


def find_pattern(
    rebuilds: Iterable[Rebuild],
    pattern: str,
    butler: Butler,
    *,
    parallelism: int = LOG_READ_PARALLELISM,
    cancel: Optional[CancelToken] = None,
) -> List[Rebuild]:
    """Return the rebuilds whose debug logs contain a line matching ``pattern``."""
    regex = re.compile(pattern)
    rebuilds = list(rebuilds)
    LOG.info('Finding pattern "%s"', pattern)

    def _scan(rebuild: Rebuild, emit) -> None:
        asset = AssetKind.DEBUG_LOGS.for_target(rebuild.target())
        with butler.local(rebuild.run_id).reader(asset) as fh:
            for line in fh:
                if regex.search(line):
                    LOG.info("%s\n\t%s", rebuild.id, line.rstrip("\n"))
                    emit(rebuild)
                    break

    p = Pipe.from_slice(rebuilds, cancel=cancel)
    p = p.par_do(parallelism, _fetch_logs(butler))
    p = p.do(_scan)
    found = list(p.out())
    total = len(rebuilds)
    LOG.info("Found in %d/%d (%2.0f%%)", len(found), total, (len(found) / total * 100) if total else 0)
    return found


def cluster_failures(
    rebuilds: Iterable[Rebuild],
    butler: Butler,
    summarizer: Summarizer,
    gate: Ticker,
    *,
    read_parallelism: int = LOG_READ_PARALLELISM,
    summarize_parallelism: int = SUMMARIZE_PARALLELISM,
    cancel: Optional[CancelToken] = None,
) -> ClusterReport:
    """Summarize each failure's logs, then ask for failure classes across them."""
    rebuilds = list(rebuilds)
    p = Pipe.from_slice(rebuilds, cancel=cancel)
    token = p.cancel_token
    p = p.par_do(read_parallelism, _fetch_logs(butler))

    def _summarize(rebuild: Rebuild, emit) -> None:
        asset = AssetKind.DEBUG_LOGS.for_target(rebuild.target())
        with butler.local(rebuild.run_id).reader(asset) as fh:
            logs = fh.read()
        if len(logs) > UPLOAD_BYTES_LIMIT:
            logs = "...(truncated)..." + logs[-UPLOAD_BYTES_LIMIT:]
        if not gate.wait(token):
            return
        try:
            text = summarizer.generate([SUMMARY_REQUEST, logs])
        except Exception as exc:  # noqa: BLE001
            LOG.warning("Summarizing %s failed: %s", rebuild.id, exc)
            return
        LOG.info("Summary: %s", text)
        emit((rebuild, text))

    LOG.info("Summarizing %d rebuild failures", len(rebuilds))
    report = ClusterReport()
    for rebuild, text in par_into(summarize_parallelism, p, _summarize).out():
        if text:
            report.summaries.append((rebuild, text))

    LOG.info("Finished summarizing, asking for categories based on %d summaries.", len(report.summaries))
    if not report.summaries or not gate.wait(token):
        return report
    try:
        report.classes = summarizer.generate([CLASSIFY_REQUEST, *(text for _, text in report.summaries)])
    except Exception as exc:  # noqa: BLE001
        LOG.warning("Classifying summaries failed: %s", exc)
        return report
    LOG.info("Grouping completed.")
    return report


def run_benchmark(
    rebuilder: Rebuilder,
    bench: BenchmarkSet,
    index: RunIndex,
    *,
    jobs: int = 1,
    executor: str = "local",
    now: Optional[datetime] = None,
) -> BenchmarkResult:
    """Rebuild a benchmark set as a new run, recording every verdict."""
    if not isinstance(index, WritableRunIndex):
        raise TypeError("Cannot run a benchmark against a read-only run index.")
    started = (now or datetime.now(timezone.utc)).astimezone(timezone.utc)
    run_id = started.strftime("%Y-%m-%dT%H:%M:%SZ")
    index.write_run(
        Run(
            id=run_id,
            benchmark_name=bench.name,
            benchmark_hash=bench.hash(),
            type="smoketest",
            created=started.isoformat(),
        )
    )
    successes = 0
    total = 0
    for verdict in rebuilder.run_bench(bench, run_id, jobs=jobs):
        total += 1
        if verdict.ok:
            successes += 1
        index.write_rebuild(Rebuild.from_verdict(verdict, executor, run_id, datetime.now(timezone.utc)))
    LOG.info("Finished benchmark %s with %d/%d successes.", bench.name, successes, total)
    return BenchmarkResult(run_id=run_id, successes=successes, total=total)
