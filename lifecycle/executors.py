"""
mintsaga — Executors for Blocking I/O

Signer futures, receipt waits and reconciliation polls all block. The
coordinator hands them to an executor so its lock is never held across
I/O:

  - InlineExecutor: runs the task in the caller's thread (tests, CLI)
  - ThreadPoolExecutor: bounded concurrency (server)

Selected by MINTSAGA_WORKER_MODE:
  inline    → InlineExecutor
  thread    → ThreadPoolExecutor (default)
"""

from __future__ import annotations

import logging
import os
from concurrent.futures import Executor, Future, ThreadPoolExecutor

logger = logging.getLogger("mintsaga.executors")


class InlineExecutor(Executor):
    """Synchronous execution. submit() returns an already-completed future."""

    def submit(self, fn, /, *args, **kwargs) -> Future:
        future: Future = Future()
        future.set_running_or_notify_cancel()
        try:
            result = fn(*args, **kwargs)
        except Exception as e:
            future.set_exception(e)
        else:
            future.set_result(result)
        return future


def make_executor(mode: str = "", max_workers: int = 8) -> Executor:
    mode = (mode or os.environ.get("MINTSAGA_WORKER_MODE", "thread")).lower()
    if mode == "inline":
        logger.info("Using inline executor")
        return InlineExecutor()
    if mode != "thread":
        logger.warning("Unknown worker mode %r, falling back to thread pool", mode)
    return ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="mintsaga")
