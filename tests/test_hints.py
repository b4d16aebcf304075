from pathlib import Path

from artifact_rebuilder.hints import HintCatalog


def test_bundled_hints():
    catalog = HintCatalog()
    assert catalog.suggest("dpkg-checkbuilddeps: error: Unmet build dependencies: libssl-dev") == (
        "Missing build dependencies: libssl-dev"
    )
    assert catalog.suggest("foo.c:1:10: fatal error: zlib.h: No such file or directory") == "Missing header zlib.h"
    assert catalog.suggest("/usr/bin/ld: cannot find -lffi") == "Missing system library libffi"
    assert catalog.suggest("error: pathspec 'v9.9' did not match any file(s) known to git") == (
        "Ref v9.9 not found in repository"
    )
    assert catalog.suggest("all good") is None


def test_custom_catalog(tmp_path: Path):
    path = tmp_path / "hints.yaml"
    path.write_text('errors:\n  - pattern: "No space left"\n    hint: "Builder disk is full"\n')
    catalog = HintCatalog(path)
    assert catalog.match("write: No space left on device").hint == "Builder disk is full"
    assert HintCatalog(tmp_path / "missing.yaml").suggest("No space left") is None
