"""Retry orchestration across an ordered list of candidate URLs."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional, Sequence, TypeVar

from config.settings import ATTEMPTS_PER_CANDIDATE, RETRY_DELAY_SECONDS
from engine.errors import RETRYABLE_ERRORS, AggregateError
from engine.events import log_event

logger = logging.getLogger(__name__)

T = TypeVar("T")

_DIAGNOSTIC_LOG_CHARS = 500


@dataclass(frozen=True)
class AttemptRecord:
    url: str
    attempt: int
    outcome: str
    error: Optional[str] = None


class RetryOrchestrator:
    """Drive an attempt callable across candidates with bounded retries.

    Candidates are tried strictly in order, each up to ``attempts_per_candidate``
    times, sleeping ``retry_delay`` seconds between consecutive attempts. The
    first success returns immediately. Only ``retryable`` errors are absorbed;
    anything else propagates from the attempt that raised it.
    """

    def __init__(
        self,
        *,
        attempts_per_candidate: int = ATTEMPTS_PER_CANDIDATE,
        retry_delay: float = RETRY_DELAY_SECONDS,
        sleep: Optional[Callable[[float], None]] = None,
        retryable=RETRYABLE_ERRORS,
    ) -> None:
        self.attempts_per_candidate = attempts_per_candidate
        self.retry_delay = retry_delay
        self.sleep = sleep
        self.retryable = retryable

    def _sleep(self, seconds: float) -> None:
        if seconds <= 0:
            return
        (self.sleep or time.sleep)(seconds)

    def run(
        self,
        candidates: Sequence[str],
        attempt: Callable[[str], T],
        attempts_per_candidate: Optional[int] = None,
        *,
        cleanup: Optional[Callable[[], None]] = None,
        context: Optional[dict] = None,
    ) -> T:
        budget = attempts_per_candidate if attempts_per_candidate is not None else self.attempts_per_candidate
        if budget < 1:
            raise ValueError("attempts_per_candidate must be at least 1")
        if not candidates:
            raise ValueError("at least one candidate URL is required")
        fields = dict(context or {})

        records: list[AttemptRecord] = []
        attempted: list[str] = []
        last_error = None
        first = True
        for url in candidates:
            attempted.append(url)
            for number in range(1, budget + 1):
                if not first:
                    self._sleep(self.retry_delay)
                first = False
                try:
                    result = attempt(url)
                except self.retryable as exc:
                    last_error = exc
                    records.append(AttemptRecord(url=url, attempt=number, outcome="failed", error=str(exc)))
                    diagnostics = getattr(exc, "diagnostics", "") or ""
                    log_event(
                        logging.WARNING,
                        "extract_attempt_failed",
                        url=url,
                        attempt=number,
                        budget=budget,
                        error_type=type(exc).__name__,
                        error=str(exc),
                        diagnostics=diagnostics[-_DIAGNOSTIC_LOG_CHARS:],
                        **fields,
                    )
                    if cleanup is not None:
                        cleanup()
                    continue
                records.append(AttemptRecord(url=url, attempt=number, outcome="succeeded"))
                log_event(logging.INFO, "extract_attempt_succeeded", url=url, attempt=number, **fields)
                return result

        log_event(
            logging.ERROR,
            "extract_candidates_exhausted",
            attempted_urls=attempted,
            attempts=len(records),
            last_error=str(last_error),
            **fields,
        )
        raise AggregateError(last_error, attempted, records)
