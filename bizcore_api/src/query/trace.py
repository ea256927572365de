from __future__ import annotations

import logging
import time
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


class StageTiming(BaseModel):
    """Duration of one compilation or execution stage."""
    stage: str = Field(..., description="Stage name")
    duration_ms: float = Field(..., description="Wall-clock duration in milliseconds")
    extra: Dict[str, Any] = Field(default_factory=dict, description="Stage-specific details")


class ExecutionTrace:
    """
    Ordered per-request record of stage timings.

    Created fresh for every query builder and returned to the caller as the
    `performance` section of the result; never persisted.
    """

    def __init__(self) -> None:
        self._stages: List[StageTiming] = []

    def record(self, stage: str, duration_ms: float, **extra: Any) -> None:
        self._stages.append(StageTiming(stage=stage, duration_ms=round(duration_ms, 3), extra=extra))
        logger.debug("query stage=%s duration_ms=%.3f extra=%s", stage, duration_ms, extra)

    @contextmanager
    def stage(self, name: str, **extra: Any) -> Iterator[Dict[str, Any]]:
        """
        Time a block and record it. The yielded dict may be filled with extra
        details while the block runs.
        """
        details: Dict[str, Any] = dict(extra)
        start = time.perf_counter()
        try:
            yield details
        finally:
            self.record(name, (time.perf_counter() - start) * 1000.0, **details)

    @property
    def stages(self) -> List[StageTiming]:
        return list(self._stages)

    def as_dicts(self) -> List[Dict[str, Any]]:
        return [s.model_dump(mode="json") for s in self._stages]
