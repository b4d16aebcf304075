from __future__ import annotations

import os
from pathlib import Path

from .assets import Butler
from .history import RunIndex
from .web import create_app


def _index_path() -> Path:
    return Path(os.environ.get("REBUILD_INDEX_DB", "/data/index.db"))


def _butler() -> Butler:
    local = Path(os.environ.get("REBUILD_ASSETS_DIR", "/data/assets"))
    remote = os.environ.get("REBUILD_REMOTE_ASSETS_DIR")
    return Butler(local, Path(remote) if remote else None)


app = create_app(RunIndex(_index_path()), _butler())
