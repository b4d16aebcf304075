from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

import yaml

BUNDLED_HINTS = Path(__file__).parent / "data" / "hints.yaml"


@dataclass
class Hint:
    pattern: str
    hint: str

    def render(self, output: str) -> str:
        match = re.search(self.pattern, output)
        if not match:
            return self.hint
        return self.hint.format(*match.groups(), **match.groupdict())


class HintCatalog:
    def __init__(self, path: Path = BUNDLED_HINTS):
        self.hints: List[Hint] = []
        if path.exists():
            data = yaml.safe_load(path.read_text()) or {}
            for entry in data.get("errors", []):
                self.hints.append(Hint(pattern=entry["pattern"], hint=entry["hint"]))

    def match(self, output: str) -> Optional[Hint]:
        for hint in self.hints:
            if re.search(hint.pattern, output):
                return hint
        return None

    def suggest(self, output: str) -> Optional[str]:
        hint = self.match(output)
        return hint.render(output) if hint else None
