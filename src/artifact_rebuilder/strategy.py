from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable

from .models import BuildEnv, Instructions, Target


class GenerationError(ValueError):
    """Raised when a strategy cannot produce instructions for a target."""


class Strategy(ABC):
    """Ecosystem-specific compiler from packaging metadata to a build recipe.

    Implementations must be pure: the same strategy, target and env always
    produce byte-identical instructions, with no network or filesystem access.
    """

    #: Key used for this strategy in build definitions.
    kind: str = ""

    @abstractmethod
    def generate_for(self, target: Target, env: BuildEnv) -> Instructions:
        ...

    @abstractmethod
    def to_dict(self) -> Dict[str, Any]:
        ...

    @classmethod
    @abstractmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Strategy":
        ...


def script(*lines: str) -> str:
    """Render a stage script with the standard shell prologue."""
    return "\n".join(["set -eux", *lines])


def join_requirements(requirements: Iterable[str]) -> str:
    # No dedup or sort: install order is part of the recipe.
    return " ".join(requirements)
