"""Pure-Python wheel rebuilds from a source repository."""

from __future__ import annotations

import posixpath
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

from packaging.utils import InvalidWheelFilename, canonicalize_name, parse_wheel_filename

from .models import BuildEnv, Instructions, Target
from .strategy import GenerationError, Strategy, join_requirements, script

SYSTEM_DEPS: Tuple[str, ...] = ("git", "python3")
BUILD_TOOL = "build"


@dataclass(frozen=True)
class PureWheelBuild(Strategy):
    repo: str = ""
    ref: str = ""
    directory: str = "."
    requirements: Tuple[str, ...] = ()
    registry_time: Optional[str] = None

    kind = "pure_wheel_build"

    def generate_for(self, target: Target, env: BuildEnv) -> Instructions:
        self._check_artifact(target)
        if not self.ref:
            raise GenerationError(f"No source ref located for {target.package}=={target.version}.")
        if env.has_repo:
            source = script(f"git checkout --force '{self.ref}'")
        else:
            if not self.repo:
                raise GenerationError(f"No source repository located for {target.package}.")
            source = script(f"git clone '{self.repo}' .", f"git checkout --force '{self.ref}'")

        deps_lines = []
        if env.timewarp_host and self.registry_time:
            deps_lines.append(f"export PIP_INDEX_URL=http://{env.timewarp_host}/pypi/{self.registry_time}/simple")
        deps_lines.append("/usr/bin/python3 -m venv /deps")
        deps_lines.append("/deps/bin/pip install " + join_requirements((BUILD_TOOL, *self.requirements)))

        directory = posixpath.normpath(self.directory or ".")
        return Instructions(
            source=source,
            deps=script(*deps_lines),
            build=script(f"/deps/bin/python3 -m build --wheel -n {directory}"),
            system_deps=SYSTEM_DEPS,
            output_path=posixpath.normpath(posixpath.join(directory, "dist", target.artifact)),
        )

    @staticmethod
    def _check_artifact(target: Target) -> None:
        try:
            name, version, _, tags = parse_wheel_filename(target.artifact)
        except InvalidWheelFilename as exc:
            raise GenerationError(f"Invalid wheel filename '{target.artifact}': {exc}") from exc
        if name != canonicalize_name(target.package):
            raise GenerationError(f"Wheel '{target.artifact}' does not belong to package {target.package}.")
        if str(version) != target.version:
            raise GenerationError(f"Wheel '{target.artifact}' is not version {target.version}.")
        if not any(tag.platform == "any" for tag in tags):
            raise GenerationError(f"Wheel '{target.artifact}' is not a pure-Python wheel.")

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "repo": self.repo,
            "ref": self.ref,
            "directory": self.directory,
            "requirements": list(self.requirements),
        }
        if self.registry_time:
            data["registry_time"] = self.registry_time
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PureWheelBuild":
        return cls(
            repo=data.get("repo", ""),
            ref=data.get("ref", ""),
            directory=data.get("directory", "."),
            requirements=tuple(data.get("requirements") or ()),
            registry_time=data.get("registry_time"),
        )
