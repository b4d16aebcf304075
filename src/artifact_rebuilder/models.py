from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Iterator, Optional, Tuple


class Ecosystem(str, Enum):
    DEBIAN = "debian"
    PYPI = "pypi"


@dataclass(frozen=True)
class Target:
    ecosystem: Ecosystem
    package: str
    version: str
    artifact: str

    @property
    def id(self) -> str:
        return "!".join([self.ecosystem.value, self.package, self.version, self.artifact])


@dataclass(frozen=True)
class FileWithChecksum:
    url: str = ""
    checksum: str = ""

    def __bool__(self) -> bool:
        return bool(self.url)


@dataclass(frozen=True)
class BuildEnv:
    timewarp_host: Optional[str] = None
    has_repo: bool = False


@dataclass(frozen=True)
class Instructions:
    source: str
    deps: str
    build: str
    system_deps: Tuple[str, ...]
    output_path: str

    def stages(self) -> Iterator[Tuple[str, str]]:
        """Yield (name, script) pairs in the order they must run."""
        yield "source", self.source
        yield "deps", self.deps
        yield "build", self.build


@dataclass(frozen=True)
class Verdict:
    target: Target
    strategy: Any
    message: str = ""
    run_id: str = ""
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def ok(self) -> bool:
        return self.message == ""


class AssetKind(str, Enum):
    BUILD_DEF = "build_def"
    DEBUG_LOGS = "debug_logs"
    REBUILD = "rebuild"
    UPSTREAM = "upstream"
    DIFF = "diff"

    def for_target(self, target: Target) -> "Asset":
        return Asset(kind=self, target=target)


@dataclass(frozen=True)
class Asset:
    kind: AssetKind
    target: Target

    @property
    def filename(self) -> str:
        if self.kind is AssetKind.BUILD_DEF:
            return "build.yaml"
        if self.kind is AssetKind.DEBUG_LOGS:
            return "logs"
        if self.kind is AssetKind.UPSTREAM:
            return f"upstream.{self.target.artifact}"
        if self.kind is AssetKind.DIFF:
            return f"{self.target.artifact}.diff"
        return self.target.artifact
