"""Uniform catch-and-continue runner for optional pipeline stages."""

from __future__ import annotations

import inspect
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Generic, Optional, TypeVar, Union

from ..errors import StageError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class StageResult(Generic[T]):
    """Outcome of one stage: its output, or the last-good input plus the error."""

    stage: str
    value: T
    ok: bool = True
    error: Optional[StageError] = None
    skipped: bool = False
    duration_ms: float = 0.0


async def run_stage(
    stage: str,
    fn: Callable[[], Union[T, Awaitable[T]]],
    fallback: T,
    *,
    enabled: bool = True,
) -> StageResult[T]:
    """
    Run `fn` and wrap the outcome.

    A disabled stage returns `fallback` untouched. Any exception is logged once
    and turned into `ok=False` with `fallback` as the value, so the caller
    always continues with usable input.
    """
    if not enabled:
        return StageResult(stage=stage, value=fallback, skipped=True)

    start = time.monotonic()
    try:
        value = fn()
        if inspect.isawaitable(value):
            value = await value
    except Exception as e:
        duration_ms = (time.monotonic() - start) * 1000
        logger.warning("[Stage] %s failed, continuing with previous result: %s", stage, e)
        return StageResult(
            stage=stage,
            value=fallback,
            ok=False,
            error=StageError(stage, e),
            duration_ms=duration_ms,
        )
    return StageResult(stage=stage, value=value, duration_ms=(time.monotonic() - start) * 1000)
