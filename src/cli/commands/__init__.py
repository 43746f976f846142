"""CLI command modules."""

from .daemon import prune, run, run_once
from .query import history, latest
from .status import health, retrievers

__all__ = [
    "run",
    "run_once",
    "prune",
    "latest",
    "history",
    "retrievers",
    "health",
]
