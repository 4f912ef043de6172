"""
Small shared utilities.
"""
from __future__ import annotations

import hashlib
import re
import time
from contextlib import contextmanager
from typing import Generator

_WS_RE = re.compile(r"\s+")


@contextmanager
def timer() -> Generator[dict, None, None]:
    """Context manager that records elapsed wall-clock milliseconds."""
    result: dict = {}
    start = time.perf_counter()
    try:
        yield result
    finally:
        result["elapsed_ms"] = int((time.perf_counter() - start) * 1000)


def fingerprint(*parts: str | None) -> str:
    """Deterministic sha256 key over whitespace-collapsed parts."""
    raw = "|".join(_WS_RE.sub(" ", p or "").strip() for p in parts)
    return hashlib.sha256(raw.encode()).hexdigest()
