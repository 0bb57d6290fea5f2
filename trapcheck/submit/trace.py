"""Metric payload tracing.

A trace destination of ``-`` logs each payload; any other value is a
directory that receives one file per submission, named after the time and
the submission UUID.  Tracing never aborts a submission.
"""

from __future__ import annotations

import logging
import os
import tempfile
import time
from typing import Optional

from trapcheck.constants import TRACE_TS_FORMAT

logger = logging.getLogger(__name__)

TRACE_TO_LOG = "-"


def check_trace_destination(dest: str) -> None:
    """Verify *dest* is ``-`` or an existing, writable directory.

    Raises ``ValueError`` describing the problem.
    """
    if not dest:
        raise ValueError("invalid trace setting (empty)")
    if dest == TRACE_TO_LOG:
        return
    if not os.path.exists(dest):
        raise ValueError(f"unable to stat ({dest})")
    if not os.path.isdir(dest):
        raise ValueError(f"not a directory ({dest})")
    try:
        with tempfile.NamedTemporaryFile(dir=dest, prefix="wtest"):
            pass
    except OSError as exc:
        raise ValueError(f"unable to write to ({dest}): {exc}") from exc


def trace_filename(submit_uuid: str, compressed: bool, now: Optional[float] = None) -> str:
    """``20240102_150405.000000000_<uuid>.json`` (``.gz`` appended when compressed)."""
    ts = time.time() if now is None else now
    whole = int(ts)
    nanos = int(round((ts - whole) * 1e9)) % 1_000_000_000
    name = f"{time.strftime(TRACE_TS_FORMAT, time.gmtime(whole))}.{nanos:09d}_{submit_uuid}.json"
    if compressed:
        name += ".gz"
    return name


class PayloadTracer:
    """Writes payload traces to the log or to files in a directory."""

    def __init__(self, dest: str, log: Optional[logging.Logger] = None) -> None:
        self.dest = dest
        self._log = log or logger

    @property
    def to_log(self) -> bool:
        return self.dest == TRACE_TO_LOG

    def log_payload(self, payload: bytes) -> None:
        self._log.info("metric payload: %s", payload.decode("utf-8", errors="replace"))

    def write(self, data: bytes, submit_uuid: str, compressed: bool) -> Optional[str]:
        """Persist *data* (as sent on the wire) and return the file path."""
        path = os.path.join(self.dest, trace_filename(submit_uuid, compressed))
        try:
            with open(path, "wb") as fh:
                fh.write(data)
        except OSError as exc:
            self._log.error("writing metric trace (%s): %s -- skipping submit trace", path, exc)
            return None
        return path
