from pathlib import Path

import pytest

from conftest import EXAMPLE, record_rebuild

from artifact_rebuilder import cli
from artifact_rebuilder.history import Run, WritableRunIndex

BUILD_DEF = f"""debian_package:
  dsc: {{url: {EXAMPLE}/pkg_1.0-1.dsc, md5: abc123}}
  orig: {{url: {EXAMPLE}/pkg_1.0.orig.tar.gz, md5: def456}}
  debian: {{url: {EXAMPLE}/pkg_1.0-1.debian.tar.xz, md5: ghi789}}
  requirements: [build-dep1]
"""

TARGET_ARGS = ["--ecosystem", "debian", "--package", "pkg", "--version", "1.0-1+b1", "--artifact", "pkg_1.0-1+b1_amd64.deb"]


def test_generate_prints_stages(tmp_path: Path, capsys):
    strategy = tmp_path / "build.yaml"
    strategy.write_text(BUILD_DEF)
    assert cli.main(["generate", "--strategy", str(strategy), *TARGET_ARGS]) == 0
    out = capsys.readouterr().out
    assert out.index("# source") < out.index("# deps") < out.index("# build")
    assert "apt install -y build-dep1" in out
    assert "mv /src/pkg_1.0-1_amd64.deb /src/pkg_1.0-1+b1_amd64.deb" in out
    assert "# output: pkg_1.0-1+b1_amd64.deb" in out


def test_generate_reports_errors(tmp_path: Path):
    strategy = tmp_path / "build.yaml"
    strategy.write_text("debian_package:\n  requirements: []\n")
    assert cli.main(["generate", "--strategy", str(strategy), *TARGET_ARGS]) == 1


def test_history_text_and_csv(tmp_path: Path, capsys):
    db = tmp_path / "index.db"
    index = WritableRunIndex(db)
    index.write_run(Run(id="run-1", benchmark_name="smoke.yaml", benchmark_hash="abc", type="smoketest", created="2024-01-01"))
    record_rebuild(index, "run-1", "alpha", success=True)
    record_rebuild(index, "run-1", "beta", message="content mismatch: rebuilt sha256 a != upstream sha256 b")
    csv_path = tmp_path / "rebuilds.csv"

    assert cli.main(["history", "--index", str(db), "--run", "run-1", "--failed", "--export-csv", str(csv_path)]) == 0
    out = capsys.readouterr().out
    assert "run-1 smoke.yaml (smoketest): 1/2 verified" in out
    assert "FAILED debian!beta!1.0-1!beta_1.0-1_amd64.deb" in out
    assert "alpha" not in out.split("Rebuilds in")[1].split("Top")[0]
    assert "- beta: 1 failures" in out
    assert csv_path.exists()


def test_cluster_requires_summarizer(tmp_path: Path):
    WritableRunIndex(tmp_path / "index.db")
    assert cli.main(["cluster", "--index", str(tmp_path / "index.db"), "--run", "run-1"]) == 1


def test_unknown_command():
    with pytest.raises(SystemExit):
        cli.parse_args(["publish"])


def test_find_uses_configured_parallelism(monkeypatch, tmp_path: Path, capsys):
    db = tmp_path / "index.db"
    index = WritableRunIndex(db)
    rebuild = record_rebuild(index, "run-1", "beta")
    cfg_path = tmp_path / "rebuilder.json"
    cfg_path.write_text('{"rebuilder": {"read_parallelism": 3}}')
    seen = {}

    def fake_find_pattern(rebuilds, pattern, butler, *, parallelism):
        seen["parallelism"] = parallelism
        return list(rebuilds)

    monkeypatch.setattr(cli, "find_pattern", fake_find_pattern)
    argv = ["find", "--config", str(cfg_path), "--index", str(db), "--run", "run-1", "--pattern", "error"]
    assert cli.main(argv) == 0
    assert seen["parallelism"] == 3
    assert rebuild.id in capsys.readouterr().out
