"""Retry policy for metric submissions.

The policy is a plain value object: :meth:`RetryPolicy.decide` looks only at
its arguments, so the submission loop owns all mutable state.
"""

from __future__ import annotations

import ssl
from dataclasses import dataclass
from typing import Optional

from trapcheck.constants import SUBMIT_MAX_ATTEMPTS, SUBMIT_RETRY_WAIT_MAX, SUBMIT_RETRY_WAIT_MIN
from trapcheck.errors import TrustError


@dataclass(frozen=True)
class RetryDecision:
    retry: bool
    wait: float = 0.0


_STOP = RetryDecision(retry=False)


def find_cause(exc: Optional[BaseException], exc_type: type) -> Optional[BaseException]:
    """Walk the ``__cause__``/``__context__`` chain looking for *exc_type*."""
    seen = set()
    while exc is not None and id(exc) not in seen:
        if isinstance(exc, exc_type):
            return exc
        seen.add(id(exc))
        exc = exc.__cause__ or exc.__context__
    return None


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded exponential backoff.

    ``attempt`` is 1-based: after the first failed request ``decide`` is
    called with ``attempt=1``.
    """

    max_attempts: int = SUBMIT_MAX_ATTEMPTS
    wait_min: float = SUBMIT_RETRY_WAIT_MIN
    wait_max: float = SUBMIT_RETRY_WAIT_MAX

    def backoff(self, attempt: int) -> float:
        return min(self.wait_max, self.wait_min * (2 ** (attempt - 1)))

    def decide(
        self,
        attempt: int,
        error: Optional[BaseException] = None,
        status: Optional[int] = None,
    ) -> RetryDecision:
        if attempt >= self.max_attempts:
            return _STOP
        if not self.retryable(error, status):
            return _STOP
        return RetryDecision(retry=True, wait=self.backoff(attempt))

    @staticmethod
    def retryable(error: Optional[BaseException], status: Optional[int]) -> bool:
        if error is not None:
            # certificate problems will not fix themselves between attempts
            if find_cause(error, TrustError) is not None:
                return False
            if find_cause(error, ssl.SSLCertVerificationError) is not None:
                return False
            return True
        if status is None:
            return False
        if status == 429:
            return True
        return status >= 500 and status != 501
