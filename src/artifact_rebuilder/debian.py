"""Debian source package rebuilds via dpkg-source and debuild."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Dict, Tuple

from .models import BuildEnv, FileWithChecksum, Instructions, Target
from .strategy import GenerationError, Strategy, join_requirements, script

BUILD_ROOT = "/src"
SYSTEM_DEPS: Tuple[str, ...] = ("wget", "git", "build-essential", "fakeroot", "devscripts")

# Matches binNMU artifacts such as pkg_1.0-1+b1_amd64.deb.
BINARY_VERSION_PATTERN = re.compile(
    r"^(?P<name>[^_]+)_(?P<nonbinary_version>[^_]+)\+b[0-9]+_(?P<arch>[^_]+)\.deb$"
)
_BINNMU_SUFFIX = re.compile(r"\+b[0-9]+$")


@dataclass(frozen=True)
class DebArtifact:
    name: str
    version: str
    arch: str
    base_version: str
    is_binary_rebuild: bool


def parse_deb_artifact(filename: str) -> DebArtifact:
    """Parse a <name>_<version>_<arch>.deb filename.

    Binary-only rebuilds (binNMUs) carry a +bN suffix on the version; the
    base version is what debuild names its output after.
    """
    if not filename.endswith(".deb"):
        raise GenerationError(f"Artifact '{filename}' is not a .deb file.")
    parts = filename[: -len(".deb")].split("_")
    if len(parts) != 3 or not all(parts):
        raise GenerationError(f"Artifact '{filename}' does not match <name>_<version>_<arch>.deb.")
    name, version, arch = parts
    base_version = _BINNMU_SUFFIX.sub("", version)
    return DebArtifact(
        name=name,
        version=version,
        arch=arch,
        base_version=base_version,
        is_binary_rebuild=base_version != version,
    )


@dataclass(frozen=True)
class DebianPackage(Strategy):
    dsc: FileWithChecksum = field(default_factory=FileWithChecksum)
    orig: FileWithChecksum = field(default_factory=FileWithChecksum)
    debian: FileWithChecksum = field(default_factory=FileWithChecksum)
    native: FileWithChecksum = field(default_factory=FileWithChecksum)
    requirements: Tuple[str, ...] = ()

    kind = "debian_package"

    def generate_for(self, target: Target, env: BuildEnv) -> Instructions:
        artifact = parse_deb_artifact(target.artifact)
        build_lines = ["cd */", "debuild -b -uc -us"]
        if artifact.is_binary_rebuild:
            default_output = f"{target.package}_{artifact.base_version}_{artifact.arch}.deb"
            build_lines.append(f"mv {BUILD_ROOT}/{default_output} {BUILD_ROOT}/{target.artifact}")
        return Instructions(
            source=script(*self._source_lines()),
            deps=script("apt update", "apt install -y " + join_requirements(self.requirements)),
            build=script(*build_lines),
            system_deps=SYSTEM_DEPS,
            output_path=target.artifact,
        )

    def _source_lines(self) -> list[str]:
        if not self.dsc:
            raise GenerationError("No .dsc file located for source package.")
        if self.native and (self.orig or self.debian):
            raise GenerationError("Native tarball cannot be combined with orig/debian tarballs.")
        lines = [f"wget {self.dsc.url}"]
        if self.native:
            lines.append(f"wget {self.native.url}")
        elif self.orig and self.debian:
            lines.append(f"wget {self.orig.url}")
            lines.append(f"wget {self.debian.url}")
        else:
            raise GenerationError("Neither a native tarball nor an orig+debian pair was located.")
        lines.append("")
        lines.append(f'dpkg-source -x --no-check $(basename "{self.dsc.url}")')
        return lines

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {}
        for key in ("dsc", "orig", "debian", "native"):
            located: FileWithChecksum = getattr(self, key)
            if located:
                data[key] = {"url": located.url, "md5": located.checksum}
        data["requirements"] = list(self.requirements)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DebianPackage":
        def _file(key: str) -> FileWithChecksum:
            entry = data.get(key) or {}
            return FileWithChecksum(url=entry.get("url", ""), checksum=entry.get("md5", ""))

        return cls(
            dsc=_file("dsc"),
            orig=_file("orig"),
            debian=_file("debian"),
            native=_file("native"),
            requirements=tuple(data.get("requirements") or ()),
        )
