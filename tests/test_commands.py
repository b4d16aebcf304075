import re
import threading
from datetime import datetime, timezone
from pathlib import Path

import pytest

from conftest import debian_target, non_native_strategy, record_rebuild, write_logs

from artifact_rebuilder.assets import Butler
from artifact_rebuilder.benchmark import BenchmarkEntry, BenchmarkSet
from artifact_rebuilder.commands import UPLOAD_BYTES_LIMIT, cluster_failures, find_pattern, run_benchmark
from artifact_rebuilder.history import RunIndex, WritableRunIndex
from artifact_rebuilder.models import Verdict


class OpenGate:
    def __init__(self):
        self.calls = 0

    def wait(self, cancel=None):
        self.calls += 1
        return True


class FakeSummarizer:
    def __init__(self, fail_on=None):
        self.requests = []
        self.fail_on = fail_on
        self._lock = threading.Lock()

    def generate(self, parts):
        with self._lock:
            self.requests.append(parts)
        if self.fail_on and self.fail_on in parts[-1]:
            raise RuntimeError("quota exceeded")
        if parts[0].startswith("Based on"):
            return "1. missing dependencies"
        return "summary of " + parts[-1].splitlines()[-1]


def _failures(tmp_path: Path):
    index = WritableRunIndex(tmp_path / "index.db")
    rebuilds = [record_rebuild(index, "run-1", name) for name in ("alpha", "beta", "gamma", "delta")]
    write_logs(tmp_path / "assets", rebuilds[0], "== step: deps\nE: Unable to locate package libfoo-dev\n")
    write_logs(tmp_path / "assets", rebuilds[1], "== step: build\nerror: linker failed\n")
    write_logs(tmp_path / "assets", rebuilds[2], "== step: deps\nE: Unable to locate package libbar-dev\n")
    # delta has no logs anywhere
    return rebuilds


def test_find_pattern(tmp_path: Path):
    rebuilds = _failures(tmp_path)
    found = find_pattern(rebuilds, r"Unable to locate package lib\w+", Butler(tmp_path / "assets"), parallelism=3)
    assert sorted(r.package for r in found) == ["alpha", "gamma"]


def test_find_pattern_pulls_remote_logs(tmp_path: Path):
    rebuilds = _failures(tmp_path)
    found = find_pattern(rebuilds, "linker", Butler(tmp_path / "cache", tmp_path / "assets"))
    assert [r.package for r in found] == ["beta"]


def test_find_pattern_rejects_bad_regex(tmp_path: Path):
    with pytest.raises(re.error):
        find_pattern([], "(", Butler(tmp_path))


def test_cluster_failures(tmp_path: Path):
    rebuilds = _failures(tmp_path)
    summarizer = FakeSummarizer()
    gate = OpenGate()
    report = cluster_failures(rebuilds, Butler(tmp_path / "assets"), summarizer, gate, read_parallelism=2, summarize_parallelism=2)
    assert sorted(r.package for r, _ in report.summaries) == ["alpha", "beta", "gamma"]
    assert dict((r.package, text) for r, text in report.summaries)["beta"] == "summary of error: linker failed"
    assert report.classes == "1. missing dependencies"
    assert gate.calls == 4
    classify = summarizer.requests[-1]
    assert classify[0].startswith("Based on the following error summaries")
    assert len(classify) == 4


def test_cluster_drops_failed_summaries(tmp_path: Path):
    rebuilds = _failures(tmp_path)
    report = cluster_failures(rebuilds, Butler(tmp_path / "assets"), FakeSummarizer(fail_on="linker"), OpenGate())
    assert sorted(r.package for r, _ in report.summaries) == ["alpha", "gamma"]


def test_cluster_truncates_large_logs(tmp_path: Path):
    index = WritableRunIndex(tmp_path / "index.db")
    rebuild = record_rebuild(index, "run-1", "huge")
    write_logs(tmp_path / "assets", rebuild, "x" * (UPLOAD_BYTES_LIMIT * 2) + "\nfinal error\n")
    summarizer = FakeSummarizer()
    cluster_failures([rebuild], Butler(tmp_path / "assets"), summarizer, OpenGate())
    logs = summarizer.requests[0][1]
    assert logs.startswith("...(truncated)...")
    assert len(logs) == len("...(truncated)...") + UPLOAD_BYTES_LIMIT


def test_cluster_without_failures(tmp_path: Path):
    summarizer = FakeSummarizer()
    report = cluster_failures([], Butler(tmp_path), summarizer, OpenGate())
    assert report.summaries == []
    assert report.classes == ""
    assert summarizer.requests == []


class FakeRebuilder:
    def run_bench(self, bench, run_id, *, jobs=1):
        for i, entry in enumerate(bench.entries):
            yield Verdict(
                target=entry.target,
                strategy=entry.strategy,
                message="" if i % 2 == 0 else "build failed: deps failed",
                run_id=run_id,
            )


def test_run_benchmark_records_run(tmp_path: Path):
    bench = BenchmarkSet(
        name="smoke.yaml",
        entries=[BenchmarkEntry(target=debian_target(package=p), strategy=non_native_strategy()) for p in ("a", "b", "c")],
    )
    index = WritableRunIndex(tmp_path / "index.db")
    now = datetime(2024, 5, 6, 7, 8, 9, tzinfo=timezone.utc)
    result = run_benchmark(FakeRebuilder(), bench, index, now=now)
    assert result.run_id == "2024-05-06T07:08:09Z"
    assert (result.successes, result.total) == (2, 3)
    run = index.runs()[0]
    assert (run.benchmark_name, run.benchmark_hash, run.type) == ("smoke.yaml", bench.hash(), "smoketest")
    assert index.summary(result.run_id).failures == 1


def test_run_benchmark_needs_writable_index(tmp_path: Path):
    WritableRunIndex(tmp_path / "index.db")
    with pytest.raises(TypeError):
        run_benchmark(FakeRebuilder(), BenchmarkSet(name="empty"), RunIndex(tmp_path / "index.db"))


class ClassifyDownSummarizer(FakeSummarizer):
    def generate(self, parts):
        if parts[0].startswith("Based on"):
            raise RuntimeError("quota exceeded")
        return super().generate(parts)


def test_cluster_keeps_summaries_when_classifying_fails(tmp_path: Path):
    rebuilds = _failures(tmp_path)
    report = cluster_failures(rebuilds, Butler(tmp_path / "assets"), ClassifyDownSummarizer(), OpenGate())
    assert len(report.summaries) == 3
    assert report.classes == ""
