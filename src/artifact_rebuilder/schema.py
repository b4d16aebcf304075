"""Build definitions: strategies serialized as single-key YAML mappings."""

from __future__ import annotations

from typing import IO, Any, Dict, Type

import yaml

from .debian import DebianPackage
from .pypi import PureWheelBuild
from .strategy import Strategy

STRATEGIES: Dict[str, Type[Strategy]] = {
    DebianPackage.kind: DebianPackage,
    PureWheelBuild.kind: PureWheelBuild,
}

BUILD_DEF_HEADER = "# Edit the build definition below, then save and exit the file to begin a rebuild.\n"


def strategy_to_dict(strategy: Strategy) -> Dict[str, Any]:
    return {strategy.kind: strategy.to_dict()}


def strategy_from_dict(data: Dict[str, Any]) -> Strategy:
    if not isinstance(data, dict) or len(data) != 1:
        raise ValueError("A build definition must contain exactly one strategy key.")
    (kind, body), = data.items()
    cls = STRATEGIES.get(kind)
    if cls is None:
        raise ValueError(f"Unknown strategy '{kind}'. Known: {', '.join(sorted(STRATEGIES))}.")
    return cls.from_dict(body or {})


def dump_build_def(strategy: Strategy, stream: IO[str], *, header: bool = False) -> None:
    if header:
        stream.write(BUILD_DEF_HEADER)
    yaml.safe_dump(strategy_to_dict(strategy), stream, sort_keys=False)


def load_build_def(stream: IO[str]) -> Strategy:
    return strategy_from_dict(yaml.safe_load(stream))
