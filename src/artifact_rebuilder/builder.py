from __future__ import annotations

import logging
import re
import shutil
import subprocess
import time
from dataclasses import dataclass
from pathlib import Path
from tempfile import TemporaryDirectory
from typing import List, Optional

from .config import RebuilderConfig
from .models import Instructions, Target

LOG = logging.getLogger(__name__)

BUILD_ROOT = "/src"
SCRIPTS_ROOT = "/rebuild"
STEPS = ("system", "source", "deps", "build")

_STEP_MARKER = re.compile(r"^== step: (\w+)$", re.MULTILINE)

RUN_SCRIPT = """set -eu
for step in {steps}; do
  echo "== step: $step"
  (cd {build_root} && sh {scripts_root}/$step.sh)
done
"""


class ExecutionError(RuntimeError):
    """The recipe could not be executed to completion."""


class BuildAttemptError(ExecutionError):
    def __init__(
        self,
        message: str,
        log_path: Path,
        step: str,
        attempt: int,
        duration: Optional[float] = None,
    ):
        super().__init__(message)
        self.log_path = log_path
        self.step = step
        self.attempt = attempt
        self.duration = duration


class MissingArtifactError(RuntimeError):
    """The recipe ran but did not produce the expected output."""

    def __init__(self, message: str, log_path: Path, expected: str):
        super().__init__(message)
        self.log_path = log_path
        self.expected = expected


@dataclass
class BuildOutput:
    artifact_path: Path
    log_path: Path
    duration: float


class ContainerBuilder:
    """Runs Instructions inside a fresh container per attempt.

    The build root is bind-mounted at /src and the stage scripts at /rebuild;
    stages run in order and the first failing stage aborts the attempt.
    """

    def __init__(self, work_dir: Path, config: RebuilderConfig):
        self.work_dir = work_dir
        self.config = config
        self.log_dir = work_dir / "logs"
        self.artifact_dir = work_dir / "artifacts"

    def build(self, target: Target, instructions: Instructions, *, attempt: int = 1) -> BuildOutput:
        self.log_dir.mkdir(parents=True, exist_ok=True)
        log_path = self.log_dir / f"{target.package}-{target.version}-attempt{attempt}.log"
        image = self.config.image_for(target.ecosystem)
        start_time = time.time()

        with TemporaryDirectory(
            prefix=f"rebuild-{target.package}-{target.version}-",
            dir=self.work_dir,
            ignore_cleanup_errors=True,
        ) as tmp:
            tmp_path = Path(tmp)
            src_dir = tmp_path / "src"
            scripts_dir = tmp_path / "rebuild"
            src_dir.mkdir()
            self.write_scripts(scripts_dir, target, instructions)

            LOG.info("Rebuilding %s (attempt=%s image=%s)", target.id, attempt, image)
            cmd = self._containerized_command(image, src_dir, scripts_dir)
            self._run_capture(cmd, log_path=log_path, attempt=attempt, start_time=start_time)

            built = src_dir / instructions.output_path
            if not built.is_file():
                raise MissingArtifactError(
                    f"Build finished but {instructions.output_path} was not produced. Log: {log_path}",
                    log_path,
                    expected=instructions.output_path,
                )
            dest_dir = self.artifact_dir / f"{target.package}-{target.version}-attempt{attempt}"
            dest_dir.mkdir(parents=True, exist_ok=True)
            artifact_path = dest_dir / target.artifact
            shutil.copy2(built, artifact_path)

        duration = time.time() - start_time
        LOG.info("Rebuilt %s in %.1fs", target.id, duration)
        return BuildOutput(artifact_path=artifact_path, log_path=log_path, duration=duration)

    def write_scripts(self, scripts_dir: Path, target: Target, instructions: Instructions) -> None:
        scripts_dir.mkdir(parents=True, exist_ok=True)
        template = self.config.system_install.get(target.ecosystem.value)
        if template and instructions.system_deps:
            system = "set -eux\n" + template.format(deps=" ".join(instructions.system_deps))
        else:
            system = "set -eux\n"
        (scripts_dir / "system.sh").write_text(system + "\n")
        for name, body in instructions.stages():
            (scripts_dir / f"{name}.sh").write_text(body + "\n")
        (scripts_dir / "run.sh").write_text(
            RUN_SCRIPT.format(steps=" ".join(STEPS), build_root=BUILD_ROOT, scripts_root=SCRIPTS_ROOT)
        )

    def _containerized_command(self, image: str, src_dir: Path, scripts_dir: Path) -> List[str]:
        engine = self.config.container_engine or "docker"
        limits: List[str] = []
        if self.config.container_cpu:
            limits += ["--cpus", str(self.config.container_cpu)]
        if self.config.container_memory:
            limits += ["--memory", str(self.config.container_memory)]
        mounts = [
            "-v",
            f"{src_dir}:{BUILD_ROOT}",
            "-v",
            f"{scripts_dir}:{SCRIPTS_ROOT}:ro",
        ]
        return [engine, "run", "--rm", *limits, *mounts, "-w", BUILD_ROOT, image, "sh", f"{SCRIPTS_ROOT}/run.sh"]

    def _run_capture(self, cmd: List[str], *, log_path: Path, attempt: int, start_time: float) -> None:
        LOG.debug("Running: %s", " ".join(cmd))
        try:
            proc = subprocess.run(
                cmd,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                encoding="utf-8",
                errors="replace",
                timeout=self.config.attempt_timeout,
            )
        except subprocess.TimeoutExpired as exc:
            output = exc.stdout or ""
            if isinstance(output, bytes):
                output = output.decode("utf-8", errors="replace")
            log_path.write_text(output + "\n== timeout\n", encoding="utf-8")
            raise BuildAttemptError(
                f"{failed_step(output)} timed out after {self.config.attempt_timeout}s. Log: {log_path}",
                log_path,
                step=failed_step(output),
                attempt=attempt,
                duration=self.config.attempt_timeout,
            ) from exc
        log_path.write_text(proc.stdout or "", encoding="utf-8")
        if proc.returncode != 0:
            step = failed_step(proc.stdout or "")
            raise BuildAttemptError(
                f"{step} failed (rc={proc.returncode}). Log: {log_path}",
                log_path,
                step=step,
                attempt=attempt,
                duration=time.time() - start_time,
            )


def failed_step(output: str) -> str:
    """Return the last stage that started according to the run log."""
    steps = _STEP_MARKER.findall(output)
    return steps[-1] if steps else "container"
