from __future__ import annotations

import json
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Optional

from .models import BuildEnv, Ecosystem

DEFAULT_IMAGES: Dict[str, str] = {
    Ecosystem.DEBIAN.value: "docker.io/library/debian:bookworm",
    Ecosystem.PYPI.value: "docker.io/library/python:3.12-slim",
}

# Package manager command used to install Instructions.system_deps.
DEFAULT_SYSTEM_INSTALL: Dict[str, str] = {
    Ecosystem.DEBIAN.value: "apt update && apt install -y {deps}",
    Ecosystem.PYPI.value: "apt-get update && apt-get install -y {deps}",
}


@dataclass
class RebuilderConfig:
    env: BuildEnv = field(default_factory=BuildEnv)
    container_engine: str = "docker"
    container_images: Dict[str, str] = field(default_factory=lambda: dict(DEFAULT_IMAGES))
    system_install: Dict[str, str] = field(default_factory=lambda: dict(DEFAULT_SYSTEM_INSTALL))
    container_cpu: Optional[str] = None
    container_memory: Optional[str] = None
    max_attempts: int = 2
    attempt_timeout: int = 3600  # seconds
    attempt_backoff_base: int = 5  # seconds
    attempt_backoff_max: int = 60  # seconds
    upstream_timeout: int = 120  # seconds
    read_parallelism: int = 10
    summarize_parallelism: int = 50
    summarize_qps: float = 15.0
    summarizer_url: Optional[str] = None
    summarizer_token: Optional[str] = None

    def image_for(self, ecosystem: Ecosystem) -> str:
        image = self.container_images.get(ecosystem.value)
        if not image:
            raise ValueError(f"No container image configured for ecosystem '{ecosystem.value}'.")
        return image


def load_config(path: Optional[Path]) -> Dict:
    """Load a config file from TOML or JSON."""
    if path is None:
        return {}
    if not path.exists():
        raise FileNotFoundError(f"Config file {path} was not found.")
    if path.suffix in {".toml", ".tml"}:
        return tomllib.loads(path.read_text())
    if path.suffix in {".json"}:
        return json.loads(path.read_text())
    raise ValueError(f"Unsupported config format for {path}. Use TOML or JSON.")


def build_config(
    *,
    config_file: Optional[Path] = None,
    container_engine: Optional[str] = None,
    container_images: Optional[Dict[str, str]] = None,
    container_cpu: Optional[str] = None,
    container_memory: Optional[str] = None,
    max_attempts: Optional[int] = None,
    attempt_timeout: Optional[int] = None,
    attempt_backoff_base: Optional[int] = None,
    attempt_backoff_max: Optional[int] = None,
    read_parallelism: Optional[int] = None,
    summarize_parallelism: Optional[int] = None,
    summarize_qps: Optional[float] = None,
    summarizer_url: Optional[str] = None,
    summarizer_token: Optional[str] = None,
    timewarp_host: Optional[str] = None,
    has_repo: Optional[bool] = None,
) -> RebuilderConfig:
    """Merge CLI inputs with any file-based configuration."""
    file_data = load_config(config_file)
    cfg = file_data.get("rebuilder", {}) if isinstance(file_data, dict) else {}

    env_section = cfg.get("env", {})
    env = BuildEnv(
        timewarp_host=timewarp_host or env_section.get("timewarp_host"),
        has_repo=_maybe_bool(has_repo, env_section.get("has_repo", False)),
    )

    images = dict(DEFAULT_IMAGES)
    images.update(cfg.get("container_images", {}))
    images.update(container_images or {})

    system_install = dict(DEFAULT_SYSTEM_INSTALL)
    system_install.update(cfg.get("system_install", {}))

    return RebuilderConfig(
        env=env,
        container_engine=container_engine or cfg.get("container_engine", "docker"),
        container_images=images,
        system_install=system_install,
        container_cpu=container_cpu or cfg.get("container_cpu"),
        container_memory=container_memory or cfg.get("container_memory"),
        max_attempts=max_attempts or cfg.get("max_attempts", 2),
        attempt_timeout=attempt_timeout or cfg.get("attempt_timeout", 3600),
        attempt_backoff_base=attempt_backoff_base or cfg.get("attempt_backoff_base", 5),
        attempt_backoff_max=attempt_backoff_max or cfg.get("attempt_backoff_max", 60),
        upstream_timeout=cfg.get("upstream_timeout", 120),
        read_parallelism=read_parallelism or cfg.get("read_parallelism", 10),
        summarize_parallelism=summarize_parallelism or cfg.get("summarize_parallelism", 50),
        summarize_qps=summarize_qps or cfg.get("summarize_qps", 15.0),
        summarizer_url=summarizer_url or cfg.get("summarizer_url"),
        summarizer_token=summarizer_token or cfg.get("summarizer_token"),
    )


def _maybe_bool(cli_value: Optional[bool], cfg_value: Optional[bool]) -> bool:
    if cli_value is not None:
        return cli_value
    return bool(cfg_value) if cfg_value is not None else False
