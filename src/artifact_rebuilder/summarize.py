from __future__ import annotations

import json
import logging
import time
import urllib.request
from typing import Callable, List, Optional, Protocol

LOG = logging.getLogger(__name__)

EXPERT_PROMPT = (
    "You are an expert in diagnosing build issues in multiple open source ecosystems. "
    "Explain concisely why a rebuild failed or why it produced an artifact that differs "
    "from the upstream package, and suggest changes that could fix it."
)


class Summarizer(Protocol):
    def generate(self, parts: List[str]) -> str: ...


class WebhookSummarizer:
    """Posts prompt parts as JSON to a summarization service and returns its text."""

    def __init__(
        self,
        url: str,
        *,
        token: Optional[str] = None,
        timeout: int = 60,
        system: str = EXPERT_PROMPT,
        opener: Callable = urllib.request.urlopen,
        retries: int = 2,
    ):
        self.url = url
        self.token = token
        self.timeout = timeout
        self.system = system
        self.retries = max(1, retries)
        self._open = opener

    def generate(self, parts: List[str]) -> str:
        body = json.dumps({"system": self.system, "parts": parts}).encode()
        last_exc: Exception | None = None
        for attempt in range(self.retries):
            req = urllib.request.Request(self.url, data=body, method="POST")
            req.add_header("Content-Type", "application/json")
            if self.token:
                req.add_header("Authorization", f"Bearer {self.token}")
            try:
                with self._open(req, timeout=self.timeout) as resp:  # noqa: S310
                    if resp.status >= 400:
                        raise RuntimeError(f"Summarizer responded {resp.status}")
                    return json.loads(resp.read().decode()).get("text", "")
            except Exception as exc:  # noqa: BLE001
                last_exc = exc
                LOG.debug("Summarizer call %s/%s failed: %s", attempt + 1, self.retries, exc)
                if attempt + 1 < self.retries:
                    time.sleep(1)
        raise RuntimeError(f"Summarizer request failed: {last_exc}")
