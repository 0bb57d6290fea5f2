"""Metric submission: pipeline, retry policy and payload tracing."""

from trapcheck.submit.pipeline import SubmissionPipeline, compress
from trapcheck.submit.retry import RetryDecision, RetryPolicy
from trapcheck.submit.trace import PayloadTracer, check_trace_destination

__all__ = [
    "PayloadTracer",
    "RetryDecision",
    "RetryPolicy",
    "SubmissionPipeline",
    "check_trace_destination",
    "compress",
]
