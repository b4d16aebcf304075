from __future__ import annotations

import hashlib
import logging
import shutil
import subprocess
import time
from pathlib import Path
from typing import Callable, Iterator, Optional, Protocol

from .assets import LocalAssetStore
from .benchmark import BenchmarkEntry, BenchmarkSet
from .builder import BuildOutput, ExecutionError, MissingArtifactError
from .config import RebuilderConfig
from .hints import HintCatalog
from .models import AssetKind, Instructions, Target, Verdict
from .pipe import CancelToken, Pipe
from .schema import dump_build_def
from .strategy import GenerationError, Strategy
from .upstream import UpstreamError

LOG = logging.getLogger(__name__)


class Builder(Protocol):
    def build(self, target: Target, instructions: Instructions, *, attempt: int = 1) -> BuildOutput: ...


class Upstream(Protocol):
    def fetch(self, target: Target, dest: Path) -> Path: ...


class Rebuilder:
    """Drives strategy -> build -> compare for targets and records assets."""

    def __init__(
        self,
        builder: Builder,
        upstream: Upstream,
        assets_root: Path,
        config: RebuilderConfig,
        *,
        hints: Optional[HintCatalog] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.builder = builder
        self.upstream = upstream
        self.assets_root = assets_root
        self.config = config
        self.hints = hints or HintCatalog()
        self._sleep = sleep

    def rebuild(self, target: Target, strategy: Strategy, run_id: str) -> Verdict:
        assets = LocalAssetStore(self.assets_root, run_id)

        def verdict(message: str = "") -> Verdict:
            return Verdict(target=target, strategy=strategy, message=message, run_id=run_id)

        try:
            instructions = strategy.generate_for(target, self.config.env)
        except GenerationError as exc:
            LOG.warning("Rejected %s: %s", target.id, exc)
            return verdict(f"generation failed: {exc}")

        with assets.writer(AssetKind.BUILD_DEF.for_target(target)) as fh:
            dump_build_def(strategy, fh)

        try:
            output = self._build_with_retries(target, instructions)
        except MissingArtifactError as exc:
            self._store_logs(assets, target, exc.log_path)
            LOG.error("Wrong artifact for %s: %s", target.id, exc)
            return verdict(f"wrong artifact: {exc}")
        except ExecutionError as exc:
            log_path = getattr(exc, "log_path", None)
            self._store_logs(assets, target, log_path)
            message = f"build failed: {exc}"
            hint = self._hint(log_path)
            if hint:
                message += f" Hint: {hint}"
            LOG.error("Build failed for %s: %s", target.id, message)
            return verdict(message)

        self._store_logs(assets, target, output.log_path)
        rebuilt = assets.store_file(AssetKind.REBUILD.for_target(target), output.artifact_path)
        upstream_path = assets.path(AssetKind.UPSTREAM.for_target(target))
        try:
            self.upstream.fetch(target, upstream_path)
        except UpstreamError as exc:
            LOG.error("Upstream fetch failed for %s: %s", target.id, exc)
            return verdict(f"upstream fetch failed: {exc}")

        rebuilt_digest = _sha256(rebuilt)
        upstream_digest = _sha256(upstream_path)
        if rebuilt_digest != upstream_digest:
            self._write_diff(assets, target, rebuilt, upstream_path)
            LOG.warning("Content mismatch for %s", target.id)
            return verdict(f"content mismatch: rebuilt sha256 {rebuilt_digest} != upstream sha256 {upstream_digest}")
        LOG.info("Verified %s (sha256 %s)", target.id, rebuilt_digest)
        return verdict()

    def run_bench(
        self,
        bench: BenchmarkSet,
        run_id: str,
        *,
        jobs: int = 1,
        cancel: Optional[CancelToken] = None,
    ) -> Iterator[Verdict]:
        """Rebuild every entry with ``jobs`` in flight; verdicts arrive unordered."""

        def _rebuild(entry: BenchmarkEntry, emit) -> None:
            try:
                result = self.rebuild(entry.target, entry.strategy, run_id)
            except Exception as exc:  # noqa: BLE001
                LOG.exception("Unexpected error rebuilding %s", entry.target.id)
                result = Verdict(target=entry.target, strategy=entry.strategy, message=f"internal error: {exc}", run_id=run_id)
            emit(result)

        return Pipe.from_slice(bench.entries, cancel=cancel).par_do(max(1, jobs), _rebuild).out()

    def _build_with_retries(self, target: Target, instructions: Instructions) -> BuildOutput:
        attempts = max(1, self.config.max_attempts)
        last_error: Optional[ExecutionError] = None
        for attempt in range(1, attempts + 1):
            try:
                return self.builder.build(target, instructions, attempt=attempt)
            except ExecutionError as exc:
                last_error = exc
                LOG.warning("Attempt %s/%s failed for %s: %s", attempt, attempts, target.id, exc)
                if attempt < attempts:
                    delay = min(
                        self.config.attempt_backoff_max,
                        self.config.attempt_backoff_base * (2 ** (attempt - 1)),
                    )
                    LOG.info("Backing off for %ss before next attempt for %s", delay, target.id)
                    self._sleep(delay)
        raise last_error

    def _store_logs(self, assets: LocalAssetStore, target: Target, log_path: Optional[Path]) -> None:
        if log_path and Path(log_path).exists():
            assets.store_file(AssetKind.DEBUG_LOGS.for_target(target), Path(log_path))

    def _hint(self, log_path: Optional[Path]) -> Optional[str]:
        if not log_path or not Path(log_path).exists():
            return None
        return self.hints.suggest(Path(log_path).read_text(errors="replace"))

    def _write_diff(self, assets: LocalAssetStore, target: Target, rebuilt: Path, upstream: Path) -> None:
        lines = [
            f"--- {upstream.name} ({upstream.stat().st_size} bytes)",
            f"+++ {rebuilt.name} ({rebuilt.stat().st_size} bytes)",
        ]
        diffoscope = shutil.which("diffoscope")
        if diffoscope:
            try:
                proc = subprocess.run(
                    [diffoscope, "--text", "-", str(upstream), str(rebuilt)],
                    capture_output=True,
                    text=True,
                    timeout=self.config.attempt_timeout,
                )
                lines.append(proc.stdout)
            except subprocess.TimeoutExpired:
                lines.append(f"diffoscope timed out after {self.config.attempt_timeout}s")
        with assets.writer(AssetKind.DIFF.for_target(target)) as fh:
            fh.write("\n".join(lines) + "\n")


def _sha256(path: Path) -> str:
    digest = hashlib.sha256()
    with path.open("rb") as fh:
        for chunk in iter(lambda: fh.read(1 << 20), b""):
            digest.update(chunk)
    return digest.hexdigest()
