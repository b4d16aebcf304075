from datetime import datetime, timezone
from pathlib import Path

from artifact_rebuilder.assets import LocalAssetStore
from artifact_rebuilder.debian import DebianPackage
from artifact_rebuilder.history import Rebuild, WritableRunIndex
from artifact_rebuilder.models import AssetKind, Ecosystem, FileWithChecksum, Target

EXAMPLE = "https://example.com"


def debian_target(version: str = "1.0-1", artifact: str | None = None, package: str = "pkg") -> Target:
    return Target(
        ecosystem=Ecosystem.DEBIAN,
        package=package,
        version=version,
        artifact=artifact or f"{package}_{version}_amd64.deb",
    )


def non_native_strategy(requirements=("build-dep1", "build-dep2")) -> DebianPackage:
    return DebianPackage(
        dsc=FileWithChecksum(url=f"{EXAMPLE}/pkg_1.0-1.dsc", checksum="abc123"),
        orig=FileWithChecksum(url=f"{EXAMPLE}/pkg_1.0.orig.tar.gz", checksum="def456"),
        debian=FileWithChecksum(url=f"{EXAMPLE}/pkg_1.0-1.debian.tar.xz", checksum="ghi789"),
        requirements=tuple(requirements),
    )


def record_rebuild(
    index: WritableRunIndex,
    run_id: str,
    package: str,
    *,
    success: bool = False,
    message: str = "build failed",
) -> Rebuild:
    target = debian_target(package=package)
    rebuild = Rebuild(
        run_id=run_id,
        ecosystem=target.ecosystem.value,
        package=target.package,
        version=target.version,
        artifact=target.artifact,
        success=success,
        message="" if success else message,
        strategy={},
        executor="local",
        created=datetime(2024, 1, 1, tzinfo=timezone.utc).isoformat(),
    )
    index.write_rebuild(rebuild)
    return rebuild


def write_logs(assets_root: Path, rebuild: Rebuild, text: str) -> Path:
    store = LocalAssetStore(assets_root, rebuild.run_id)
    with store.writer(AssetKind.DEBUG_LOGS.for_target(rebuild.target())) as fh:
        fh.write(text)
    return store.path(AssetKind.DEBUG_LOGS.for_target(rebuild.target()))
