"""Filesystem-backed asset storage keyed by (run id, target, asset kind)."""

from __future__ import annotations

import logging
import shutil
from contextlib import contextmanager
from pathlib import Path
from typing import IO, Iterator

from .models import Asset

LOG = logging.getLogger(__name__)


class LocalAssetStore:
    def __init__(self, root: Path, run_id: str):
        self.root = root
        self.run_id = run_id

    def path(self, asset: Asset) -> Path:
        target = asset.target
        return (
            self.root
            / self.run_id
            / target.ecosystem.value
            / target.package
            / target.version
            / target.artifact
            / asset.filename
        )

    def exists(self, asset: Asset) -> bool:
        return self.path(asset).exists()

    @contextmanager
    def reader(self, asset: Asset, *, binary: bool = False) -> Iterator[IO]:
        path = self.path(asset)
        if not path.exists():
            raise FileNotFoundError(f"Asset {asset.kind.value} for {asset.target.id} not found in run {self.run_id}.")
        mode = "rb" if binary else "r"
        with path.open(mode, **({} if binary else {"encoding": "utf-8", "errors": "replace"})) as fh:
            yield fh

    @contextmanager
    def writer(self, asset: Asset, *, binary: bool = False) -> Iterator[IO]:
        path = self.path(asset)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_name(path.name + ".partial")
        mode = "wb" if binary else "w"
        with tmp.open(mode, **({} if binary else {"encoding": "utf-8"})) as fh:
            yield fh
        tmp.replace(path)

    def store_file(self, asset: Asset, source: Path) -> Path:
        path = self.path(asset)
        path.parent.mkdir(parents=True, exist_ok=True)
        shutil.copy2(source, path)
        return path


class Butler:
    """Pulls assets from a remote store into the local cache on demand."""

    def __init__(self, local_root: Path, remote_root: Path | None = None):
        self.local_root = local_root
        self.remote_root = remote_root

    def local(self, run_id: str) -> LocalAssetStore:
        return LocalAssetStore(self.local_root, run_id)

    def fetch(self, run_id: str, asset: Asset) -> Path:
        local = self.local(run_id)
        dest = local.path(asset)
        if dest.exists():
            return dest
        if self.remote_root is None:
            raise FileNotFoundError(f"Asset {asset.kind.value} for {asset.target.id} not cached and no remote configured.")
        remote = LocalAssetStore(self.remote_root, run_id)
        if not remote.exists(asset):
            raise FileNotFoundError(f"Asset {asset.kind.value} for {asset.target.id} missing from remote run {run_id}.")
        LOG.debug("Fetching %s for %s from %s", asset.kind.value, asset.target.id, self.remote_root)
        return local.store_file(asset, remote.path(asset))
