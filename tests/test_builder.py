import subprocess
from pathlib import Path
from types import SimpleNamespace

import pytest

from conftest import debian_target, non_native_strategy

from artifact_rebuilder.builder import (
    BuildAttemptError,
    ContainerBuilder,
    MissingArtifactError,
    failed_step,
)
from artifact_rebuilder.config import RebuilderConfig
from artifact_rebuilder.models import BuildEnv


def _instructions():
    return non_native_strategy().generate_for(debian_target(), BuildEnv())


def test_containerized_command_applies_limits(tmp_path: Path):
    cfg = RebuilderConfig(container_engine="podman", container_cpu="2", container_memory="4g")
    builder = ContainerBuilder(tmp_path, cfg)
    cmd = builder._containerized_command("debian:bookworm", Path("/tmp/src"), Path("/tmp/scripts"))
    assert cmd[:3] == ["podman", "run", "--rm"]
    assert cmd[cmd.index("--cpus") + 1] == "2"
    assert cmd[cmd.index("--memory") + 1] == "4g"
    assert "/tmp/src:/src" in cmd
    assert "/tmp/scripts:/rebuild:ro" in cmd
    assert cmd[-3:] == ["debian:bookworm", "sh", "/rebuild/run.sh"]


def test_write_scripts(tmp_path: Path):
    builder = ContainerBuilder(tmp_path, RebuilderConfig())
    scripts = tmp_path / "scripts"
    builder.write_scripts(scripts, debian_target(), _instructions())
    assert sorted(p.name for p in scripts.iterdir()) == ["build.sh", "deps.sh", "run.sh", "source.sh", "system.sh"]
    assert "apt install -y wget git build-essential fakeroot devscripts" in (scripts / "system.sh").read_text()
    assert (scripts / "build.sh").read_text() == "set -eux\ncd */\ndebuild -b -uc -us\n"
    assert "for step in system source deps build; do" in (scripts / "run.sh").read_text()


def test_failed_step():
    assert failed_step("== step: system\n== step: source\nwget: 404\n") == "source"
    assert failed_step("docker: image not found") == "container"


def test_build_failure_reports_step(monkeypatch, tmp_path: Path):
    def fake_run(cmd, **kwargs):
        return SimpleNamespace(returncode=2, stdout="== step: system\n== step: source\n== step: deps\nE: Unable to locate package\n")

    monkeypatch.setattr(subprocess, "run", fake_run)
    builder = ContainerBuilder(tmp_path, RebuilderConfig())
    with pytest.raises(BuildAttemptError) as excinfo:
        builder.build(debian_target(), _instructions(), attempt=2)
    assert excinfo.value.step == "deps"
    assert excinfo.value.attempt == 2
    assert "Unable to locate package" in excinfo.value.log_path.read_text()
    assert excinfo.value.log_path.name == "pkg-1.0-1-attempt2.log"


def test_timeout_is_a_build_failure(monkeypatch, tmp_path: Path):
    def fake_run(cmd, **kwargs):
        raise subprocess.TimeoutExpired(cmd, kwargs["timeout"], output="== step: build\n")

    monkeypatch.setattr(subprocess, "run", fake_run)
    builder = ContainerBuilder(tmp_path, RebuilderConfig(attempt_timeout=5))
    with pytest.raises(BuildAttemptError) as excinfo:
        builder.build(debian_target(), _instructions())
    assert excinfo.value.step == "build"
    assert "timed out after 5s" in str(excinfo.value)


def test_missing_artifact(monkeypatch, tmp_path: Path):
    monkeypatch.setattr(subprocess, "run", lambda cmd, **kwargs: SimpleNamespace(returncode=0, stdout="ok"))
    builder = ContainerBuilder(tmp_path, RebuilderConfig())
    with pytest.raises(MissingArtifactError) as excinfo:
        builder.build(debian_target(), _instructions())
    assert excinfo.value.expected == "pkg_1.0-1_amd64.deb"


def test_successful_build_copies_artifact(monkeypatch, tmp_path: Path):
    def fake_run(cmd, **kwargs):
        src = next(arg for arg in cmd if arg.endswith(":/src")).rsplit(":", 1)[0]
        (Path(src) / "pkg_1.0-1_amd64.deb").write_bytes(b"deb")
        return SimpleNamespace(returncode=0, stdout="== step: build\n")

    monkeypatch.setattr(subprocess, "run", fake_run)
    builder = ContainerBuilder(tmp_path, RebuilderConfig())
    output = builder.build(debian_target(), _instructions())
    assert output.artifact_path.read_bytes() == b"deb"
    assert output.artifact_path.parent.parent == tmp_path / "artifacts"
    assert output.log_path.read_text() == "== step: build\n"


def test_undecodable_build_output_is_a_build_failure(tmp_path: Path):
    engine = tmp_path / "fake-engine"
    engine.write_text("#!/bin/sh\nprintf '== step: build\\nok\\n\\377\\376 bad bytes\\n'\nexit 2\n")
    engine.chmod(0o755)
    builder = ContainerBuilder(tmp_path / "work", RebuilderConfig(container_engine=str(engine)))
    with pytest.raises(BuildAttemptError) as excinfo:
        builder.build(debian_target(), _instructions())
    assert excinfo.value.step == "build"
    log = excinfo.value.log_path.read_text(encoding="utf-8")
    assert "\ufffd\ufffd bad bytes" in log
