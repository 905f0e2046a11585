# Author : Eshan Roy <eshanized@proton.me>
# SPDX-License-Identifier: MIT

"""
Generation metrics collector.

Per call we keep the batch shape, how many tokens were decoded, wall time
and the size the layer cache reached. Throughput across calls is token
weighted: a 2-token call doesn't count as much as a 200-token one.
Nothing leaves the process; the numbers go to the log and to ``summary()``.
"""

import logging
import time
from collections import Counter, deque
from dataclasses import asdict, dataclass
from typing import Optional

import torch

from xlgen.logging.logger import get_logger

logger: logging.Logger = get_logger(__name__)

_BYTES_PER_MB = 1024 * 1024


@dataclass
class RequestMetrics:
    """Stats captured for a single generate() call."""

    strategy: str = "greedy"
    num_prompts: int = 0
    prompt_tokens: int = 0
    generated_tokens: int = 0
    steps: int = 0
    total_time_ms: float = 0.0
    tokens_per_second: float = 0.0
    cache_memory_mb: float = 0.0
    peak_memory_mb: float = 0.0
    cancelled: bool = False
    exhausted: bool = False


class GenerationMetrics:
    """
    Running totals across generate() calls.

    Only the most recent ``history`` requests are kept in memory; the
    totals cover every call since construction.
    """

    def __init__(self, history: int = 256) -> None:
        self._recent: deque[RequestMetrics] = deque(maxlen=history)
        self._started = time.monotonic()
        self._requests = 0
        self._generated_tokens = 0
        self._decode_ms = 0.0
        self._peak_memory_mb = 0.0
        self._peak_cache_mb = 0.0
        self._strategies: Counter[str] = Counter()
        self._cancelled = 0
        self._exhausted = 0

    @property
    def total_requests(self) -> int:
        return self._requests

    @property
    def uptime_seconds(self) -> float:
        return time.monotonic() - self._started

    @property
    def last(self) -> Optional[RequestMetrics]:
        return self._recent[-1] if self._recent else None

    @property
    def recent(self) -> list[RequestMetrics]:
        return list(self._recent)

    def record(self, metrics: RequestMetrics) -> None:
        self._recent.append(metrics)
        self._requests += 1
        self._generated_tokens += metrics.generated_tokens
        self._decode_ms += metrics.total_time_ms
        self._peak_memory_mb = max(self._peak_memory_mb, metrics.peak_memory_mb)
        self._peak_cache_mb = max(self._peak_cache_mb, metrics.cache_memory_mb)
        self._strategies[metrics.strategy] += 1
        self._cancelled += int(metrics.cancelled)
        self._exhausted += int(metrics.exhausted)

        level = logging.WARNING if metrics.exhausted else logging.INFO
        logger.log(level, "Generation completed", extra=asdict(metrics))

    def tokens_per_second(self) -> float:
        """Generated tokens over decode time, across all calls."""
        if self._decode_ms <= 0:
            return 0.0
        return self._generated_tokens / self._decode_ms * 1000.0

    def ms_per_token(self) -> float:
        if self._generated_tokens == 0:
            return 0.0
        return self._decode_ms / self._generated_tokens

    def peak_memory_mb(self) -> float:
        return self._peak_memory_mb

    def summary(self) -> dict[str, object]:
        return {
            "total_requests": self._requests,
            "uptime_seconds": round(self.uptime_seconds, 2),
            "generated_tokens": self._generated_tokens,
            "tokens_per_second": round(self.tokens_per_second(), 2),
            "ms_per_token": round(self.ms_per_token(), 3),
            "peak_memory_mb": round(self._peak_memory_mb, 2),
            "peak_cache_mb": round(self._peak_cache_mb, 3),
            "by_strategy": dict(self._strategies),
            "cancelled_requests": self._cancelled,
            "exhausted_requests": self._exhausted,
        }

    @staticmethod
    def get_gpu_memory_mb() -> float:
        """Peak CUDA memory; 0.0 on CPU."""
        if torch.cuda.is_available():
            return torch.cuda.max_memory_allocated() / _BYTES_PER_MB
        return 0.0
