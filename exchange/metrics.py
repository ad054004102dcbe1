"""
Exchange Client - Request Counters.

Per-adapter, in-process only. The sync engine reads
MALFORMED_RECORD to report skipped rows; the rest feeds the
debug log.
"""

import logging
from collections import Counter
from enum import Enum
from typing import Optional


logger = logging.getLogger(__name__)


# Warn once the remaining request budget drops to this share of the limit
LOW_BUDGET_RATIO = 0.1


class MetricType(Enum):
    REQUEST_SUCCESS = "request_success"
    REQUEST_FAILURE = "request_failure"
    RATE_LIMIT_HIT = "rate_limit_hit"
    CONNECTION_ERROR = "connection_error"
    TIMEOUT = "timeout"
    MALFORMED_RECORD = "malformed_record"


class AdapterMetrics:

    def __init__(self, exchange_id: str):
        self._exchange_id = exchange_id
        self._counters: Counter = Counter()
        self._slowest_ms = 0.0
        self.rate_limit_remaining: Optional[int] = None
        self.rate_limit_max: Optional[int] = None

    def record_request(
        self,
        endpoint: str,
        latency_ms: float,
        success: bool,
        status_code: Optional[int] = None,
        error_code: Optional[str] = None,
    ) -> None:
        if latency_ms > self._slowest_ms:
            self._slowest_ms = latency_ms
            logger.debug(f"{self._exchange_id} slowest request so far: {endpoint} {latency_ms:.0f}ms")

        if success:
            self._counters[MetricType.REQUEST_SUCCESS] += 1
            return

        self._counters[MetricType.REQUEST_FAILURE] += 1
        code = (error_code or "").upper()
        if status_code == 429 or "RATE" in code:
            self._counters[MetricType.RATE_LIMIT_HIT] += 1
        elif "TIMEOUT" in code:
            self._counters[MetricType.TIMEOUT] += 1
        elif "NETWORK" in code:
            self._counters[MetricType.CONNECTION_ERROR] += 1

    def record_malformed(self, endpoint: str) -> None:
        """A row the parser could not read was skipped."""
        self._counters[MetricType.MALFORMED_RECORD] += 1
        logger.debug(f"{self._exchange_id} skipped malformed row from {endpoint}")

    def record_rate_limit_headers(self, remaining: Optional[int], limit: Optional[int]) -> None:
        if limit is not None:
            self.rate_limit_max = limit
        if remaining is None:
            return
        self.rate_limit_remaining = remaining
        if self.rate_limit_max and remaining <= self.rate_limit_max * LOW_BUDGET_RATIO:
            logger.warning(
                f"{self._exchange_id} request budget low: {remaining}/{self.rate_limit_max} remaining"
            )

    def count(self, metric: MetricType) -> int:
        return self._counters[metric]
