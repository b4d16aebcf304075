"""Benchmark sets: fixed lists of targets with their build definitions."""

from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import List

import yaml

from .models import Ecosystem, Target
from .schema import strategy_from_dict, strategy_to_dict
from .strategy import Strategy


@dataclass
class BenchmarkEntry:
    target: Target
    strategy: Strategy


@dataclass
class BenchmarkSet:
    name: str
    entries: List[BenchmarkEntry] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.entries)

    def targets(self) -> List[Target]:
        return [entry.target for entry in self.entries]

    def hash(self) -> str:
        payload = [
            {
                "ecosystem": entry.target.ecosystem.value,
                "name": entry.target.package,
                "version": entry.target.version,
                "artifact": entry.target.artifact,
                "strategy": strategy_to_dict(entry.strategy),
            }
            for entry in self.entries
        ]
        encoded = json.dumps(payload, sort_keys=True, separators=(",", ":")).encode()
        return hashlib.sha256(encoded).hexdigest()


def read_benchmark(path: Path) -> BenchmarkSet:
    if not path.exists():
        raise FileNotFoundError(f"Benchmark {path} was not found.")
    text = path.read_text()
    data = json.loads(text) if path.suffix == ".json" else yaml.safe_load(text)
    entries = []
    for item in (data or {}).get("packages", []):
        try:
            target = Target(
                ecosystem=Ecosystem(item["ecosystem"]),
                package=item["name"],
                version=str(item["version"]),
                artifact=item["artifact"],
            )
        except (KeyError, ValueError) as exc:
            raise ValueError(f"Invalid benchmark entry in {path}: {item!r} ({exc})") from exc
        entries.append(BenchmarkEntry(target=target, strategy=strategy_from_dict(item["strategy"])))
    return BenchmarkSet(name=path.name, entries=entries)


def list_benchmarks(directory: Path) -> List[Path]:
    return sorted(p for p in directory.iterdir() if p.suffix in {".yaml", ".yml", ".json"})
