"""
artifact rebuilder: rebuild published package artifacts from source and verify them.
"""

__all__ = [
    "models",
    "strategy",
    "debian",
    "pypi",
    "schema",
    "pipe",
    "ratelimit",
    "config",
    "builder",
    "verifier",
    "history",
    "commands",
    "hints",
]
