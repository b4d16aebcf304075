"""Download the originally published artifact for a target."""

from __future__ import annotations

import json
import logging
import shutil
import urllib.error
import urllib.request
from pathlib import Path
from typing import Callable, Dict

from .models import Ecosystem, Target

LOG = logging.getLogger(__name__)

DEBIAN_MIRROR = "https://deb.debian.org/debian"
PYPI_URL = "https://pypi.org"


class UpstreamError(RuntimeError):
    pass


def debian_pool_url(target: Target, *, mirror: str = DEBIAN_MIRROR, component: str = "main") -> str:
    package = target.package
    prefix = package[:4] if package.startswith("lib") else package[:1]
    return f"{mirror}/pool/{component}/{prefix}/{package}/{target.artifact}"


class UpstreamFetcher:
    def __init__(
        self,
        *,
        debian_mirror: str = DEBIAN_MIRROR,
        pypi_url: str = PYPI_URL,
        timeout: int = 120,
        opener: Callable = urllib.request.urlopen,
    ):
        self.debian_mirror = debian_mirror.rstrip("/")
        self.pypi_url = pypi_url.rstrip("/")
        self.timeout = timeout
        self._open = opener
        self._resolvers: Dict[Ecosystem, Callable[[Target], str]] = {
            Ecosystem.DEBIAN: lambda t: debian_pool_url(t, mirror=self.debian_mirror),
            Ecosystem.PYPI: self._pypi_url,
        }

    def resolve(self, target: Target) -> str:
        resolver = self._resolvers.get(target.ecosystem)
        if resolver is None:
            raise UpstreamError(f"No upstream source known for ecosystem {target.ecosystem.value}.")
        return resolver(target)

    def fetch(self, target: Target, dest: Path) -> Path:
        url = self.resolve(target)
        LOG.info("Fetching upstream %s", url)
        dest.parent.mkdir(parents=True, exist_ok=True)
        tmp = dest.with_name(dest.name + ".partial")
        try:
            with self._open(url, timeout=self.timeout) as resp, tmp.open("wb") as fh:  # noqa: S310
                shutil.copyfileobj(resp, fh)
        except (urllib.error.URLError, OSError) as exc:
            tmp.unlink(missing_ok=True)
            raise UpstreamError(f"Fetching {url} failed: {exc}") from exc
        tmp.replace(dest)
        return dest

    def _pypi_url(self, target: Target) -> str:
        url = f"{self.pypi_url}/pypi/{target.package}/{target.version}/json"
        try:
            with self._open(url, timeout=self.timeout) as resp:  # noqa: S310
                release = json.loads(resp.read().decode())
        except (urllib.error.URLError, OSError, ValueError) as exc:
            raise UpstreamError(f"Querying {url} failed: {exc}") from exc
        for file_info in release.get("urls", []):
            if file_info.get("filename") == target.artifact:
                return file_info["url"]
        raise UpstreamError(f"{target.artifact} is not published for {target.package}=={target.version}.")
