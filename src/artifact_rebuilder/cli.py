from __future__ import annotations

import argparse
import json
import logging
import sys
from dataclasses import asdict
from datetime import datetime, timezone
from pathlib import Path
from typing import List

import uvicorn

from .assets import Butler
from .benchmark import read_benchmark
from .builder import ContainerBuilder
from .commands import cluster_failures, find_pattern, run_benchmark
from .config import RebuilderConfig, build_config
from .history import Rebuild, RunIndex, WritableRunIndex
from .models import Ecosystem, Target
from .ratelimit import Ticker
from .schema import load_build_def
from .strategy import GenerationError
from .summarize import WebhookSummarizer
from .upstream import UpstreamFetcher
from .verifier import Rebuilder
from .web import create_app

LOG = logging.getLogger("artifact_rebuilder")


def parse_args(argv: List[str] | None = None) -> argparse.Namespace:
    argv = list(argv) if argv is not None else sys.argv[1:]
    parsers = {
        "generate": _parse_generate_args,
        "rebuild": _parse_rebuild_args,
        "bench": _parse_bench_args,
        "history": _parse_history_args,
        "find": _parse_find_args,
        "cluster": _parse_cluster_args,
        "serve": _parse_serve_args,
    }
    if not argv or argv[0] not in parsers:
        usage = argparse.ArgumentParser(prog="artifact-rebuilder", description="Rebuild and verify published package artifacts.")
        usage.error(f"expected one of: {', '.join(parsers)}")
    return parsers[argv[0]](argv[1:])


def _parse_generate_args(argv: List[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Print the build instructions for a target.")
    _add_common_args(parser)
    _add_target_args(parser)
    return parser.parse_args(argv, namespace=argparse.Namespace(command="generate"))


def _parse_rebuild_args(argv: List[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Rebuild one target and record the verdict.")
    _add_common_args(parser)
    _add_target_args(parser)
    _add_store_args(parser)
    parser.add_argument("--work-dir", type=Path, default=Path("work"), help="Scratch directory for builds.")
    parser.add_argument("--run-id", default="manual", help="Run id to record the verdict under.")
    return parser.parse_args(argv, namespace=argparse.Namespace(command="rebuild"))


def _parse_bench_args(argv: List[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Rebuild every target in a benchmark file as a new run.")
    _add_common_args(parser)
    _add_store_args(parser)
    parser.add_argument("--benchmark", type=Path, required=True, help="Benchmark YAML/JSON file.")
    parser.add_argument("--work-dir", type=Path, default=Path("work"), help="Scratch directory for builds.")
    parser.add_argument("--jobs", type=int, default=1, help="Number of concurrent rebuilds (default 1).")
    parser.add_argument("--max-attempts", type=int, default=None, help="Max build attempts per target (default 2).")
    parser.add_argument("--container-engine", default=None, help="Container engine (docker/podman). Defaults to docker.")
    parser.add_argument("--container-cpu", default=None, help="Container CPU limit (passed to engine, e.g., 2 or 0.5).")
    parser.add_argument("--container-memory", default=None, help="Container memory limit (passed to engine, e.g., 4g).")
    return parser.parse_args(argv, namespace=argparse.Namespace(command="bench"))


def _parse_history_args(argv: List[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Inspect the run index.")
    parser.add_argument("--index", "--db", dest="index", type=Path, default=Path("index.db"), help="Path to run index database.")
    parser.add_argument("--run", dest="run_id", help="Show rebuilds for this run.")
    parser.add_argument("--failed", action="store_true", help="Only show failed rebuilds.")
    parser.add_argument("--top-failures", type=int, default=5, help="Show top N failing packages.")
    parser.add_argument("--export-csv", type=Path, help="Export rebuilds to CSV at the given path.")
    parser.add_argument("--json", action="store_true", help="Output JSON instead of text.")
    return parser.parse_args(argv, namespace=argparse.Namespace(command="history"))


def _parse_find_args(argv: List[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Find rebuilds whose logs match a regex.")
    _add_common_args(parser)
    _add_store_args(parser)
    parser.add_argument("--run", dest="run_id", required=True, help="Run to search.")
    parser.add_argument("--pattern", required=True, help="Regular expression matched against each log line.")
    parser.add_argument("--all", action="store_true", help="Search successful rebuilds too.")
    return parser.parse_args(argv, namespace=argparse.Namespace(command="find"))


def _parse_cluster_args(argv: List[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Summarize failures and group them into classes.")
    _add_common_args(parser)
    _add_store_args(parser)
    parser.add_argument("--run", dest="run_id", required=True, help="Run to cluster.")
    parser.add_argument("--summarizer-url", help="Summarization service endpoint.")
    parser.add_argument("--summarize-qps", type=float, default=None, help="Max summarization calls per second (default 15).")
    return parser.parse_args(argv, namespace=argparse.Namespace(command="cluster"))


def _parse_serve_args(argv: List[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Serve the run index browser.")
    _add_store_args(parser)
    parser.add_argument("--host", default="0.0.0.0", help="Host to bind.")
    parser.add_argument("--port", type=int, default=8000, help="Port to bind.")
    parser.add_argument("--reload", action="store_true", help="Enable autoreload (dev).")
    return parser.parse_args(argv, namespace=argparse.Namespace(command="serve"))


def _add_common_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--config", type=Path, help="Optional JSON/TOML config file.")
    parser.add_argument("--timewarp-host", help="Host serving point-in-time package registry snapshots.")
    parser.add_argument("--has-repo", action="store_true", default=None, help="Source checkout is already present in the build root.")
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging.")


def _add_target_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--strategy", type=Path, required=True, help="Build definition YAML file.")
    parser.add_argument("--ecosystem", required=True, choices=[e.value for e in Ecosystem])
    parser.add_argument("--package", required=True)
    parser.add_argument("--version", required=True)
    parser.add_argument("--artifact", required=True, help="Exact published artifact filename.")


def _add_store_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--index", type=Path, default=Path("index.db"), help="Path to run index database.")
    parser.add_argument("--assets", type=Path, default=Path("assets"), help="Local asset directory.")
    parser.add_argument("--remote-assets", type=Path, help="Remote asset directory to fetch missing assets from.")


def main(argv: List[str] | None = None) -> int:
    args = parse_args(argv)
    if args.command == "history":
        return _run_history(args)
    if args.command == "serve":
        return _run_server(args)

    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO, format="%(levelname)s %(message)s")
    config = build_config(
        config_file=args.config,
        container_engine=getattr(args, "container_engine", None),
        container_cpu=getattr(args, "container_cpu", None),
        container_memory=getattr(args, "container_memory", None),
        max_attempts=getattr(args, "max_attempts", None),
        summarize_qps=getattr(args, "summarize_qps", None),
        summarizer_url=getattr(args, "summarizer_url", None),
        timewarp_host=args.timewarp_host,
        has_repo=args.has_repo,
    )

    if args.command == "generate":
        return _run_generate(args, config)
    if args.command == "rebuild":
        return _run_rebuild(args, config)
    if args.command == "bench":
        return _run_bench(args, config)
    if args.command == "find":
        return _run_find(args, config)
    return _run_cluster(args, config)


def _target_from_args(args: argparse.Namespace) -> Target:
    return Target(
        ecosystem=Ecosystem(args.ecosystem),
        package=args.package,
        version=args.version,
        artifact=args.artifact,
    )


def _rebuilder(args: argparse.Namespace, config: RebuilderConfig) -> Rebuilder:
    builder = ContainerBuilder(args.work_dir, config)
    upstream = UpstreamFetcher(timeout=config.upstream_timeout)
    return Rebuilder(builder, upstream, args.assets, config)


def _run_generate(args: argparse.Namespace, config: RebuilderConfig) -> int:
    with args.strategy.open() as fh:
        strategy = load_build_def(fh)
    try:
        instructions = strategy.generate_for(_target_from_args(args), config.env)
    except GenerationError as exc:
        LOG.error("Generation failed: %s", exc)
        return 1
    for name, body in instructions.stages():
        print(f"# {name}")
        print(body)
        print()
    print(f"# system deps: {' '.join(instructions.system_deps)}")
    print(f"# output: {instructions.output_path}")
    return 0


def _run_rebuild(args: argparse.Namespace, config: RebuilderConfig) -> int:
    with args.strategy.open() as fh:
        strategy = load_build_def(fh)
    index = WritableRunIndex(args.index)
    verdict = _rebuilder(args, config).rebuild(_target_from_args(args), strategy, args.run_id)
    index.write_rebuild(Rebuild.from_verdict(verdict, "local", args.run_id, datetime.now(timezone.utc)))
    if verdict.ok:
        print(f"OK {verdict.target.id}")
    else:
        print(f"FAILED {verdict.target.id}: {verdict.message}")
    return 0


def _run_bench(args: argparse.Namespace, config: RebuilderConfig) -> int:
    bench = read_benchmark(args.benchmark)
    index = WritableRunIndex(args.index)
    result = run_benchmark(_rebuilder(args, config), bench, index, jobs=args.jobs)
    print(f"Run {result.run_id}: {result.successes}/{result.total} rebuilds verified")
    return 0


def _run_history(args: argparse.Namespace) -> int:
    index = RunIndex(args.index)
    runs = index.runs()
    rebuilds = index.rebuilds(run_id=args.run_id, failed_only=args.failed) if args.run_id else []
    failures = index.top_failures(limit=args.top_failures, run_id=args.run_id) if args.top_failures else []

    if args.export_csv:
        index.export_csv(args.export_csv, run_id=args.run_id)

    if args.json:
        payload = {
            "runs": [asdict(run) for run in runs],
            "rebuilds": [asdict(rebuild) for rebuild in rebuilds],
            "top_failures": [asdict(stat) for stat in failures],
        }
        print(json.dumps(payload, indent=2))
        return 0

    print(f"Run index: {args.index}")
    print("Runs:")
    for run in runs:
        summary = index.summary(run.id)
        print(f"- {run.id} {run.benchmark_name} ({run.type}): {summary.successes}/{summary.total} verified")
    if args.run_id:
        print(f"\nRebuilds in {args.run_id}{' (failed only)' if args.failed else ''}:")
        for rebuild in rebuilds:
            status = "OK" if rebuild.success else "FAILED"
            print(f"- {status:6} {rebuild.id}")
            if rebuild.message:
                print(f"    message: {rebuild.message}")
    if failures:
        print(f"\nTop {len(failures)} failing packages:")
        for stat in failures:
            print(f"- {stat.package}: {stat.failures} failures")
    if args.export_csv:
        print(f"\nExported CSV to {args.export_csv}")
    return 0


def _butler(args: argparse.Namespace) -> Butler:
    return Butler(args.assets, args.remote_assets)


def _run_find(args: argparse.Namespace, config: RebuilderConfig) -> int:
    index = RunIndex(args.index)
    rebuilds = index.rebuilds(run_id=args.run_id, failed_only=not args.all)
    found = find_pattern(rebuilds, args.pattern, _butler(args), parallelism=config.read_parallelism)
    for rebuild in found:
        print(rebuild.id)
    return 0


def _run_cluster(args: argparse.Namespace, config: RebuilderConfig) -> int:
    if not config.summarizer_url:
        LOG.error("Clustering needs a summarization service; pass --summarizer-url or set summarizer_url.")
        return 1
    index = RunIndex(args.index)
    summarizer = WebhookSummarizer(config.summarizer_url, token=config.summarizer_token)
    report = cluster_failures(
        index.rebuilds(run_id=args.run_id, failed_only=True),
        _butler(args),
        summarizer,
        Ticker(config.summarize_qps),
        read_parallelism=config.read_parallelism,
        summarize_parallelism=config.summarize_parallelism,
    )
    for rebuild, text in report.summaries:
        print(f"- {rebuild.id}: {text}")
    if report.classes:
        print()
        print(report.classes)
    return 0


def _run_server(args: argparse.Namespace) -> int:
    app = create_app(RunIndex(args.index), _butler(args))
    uvicorn.run(app, host=args.host, port=args.port, reload=args.reload)
    return 0


if __name__ == "__main__":
    sys.exit(main())
