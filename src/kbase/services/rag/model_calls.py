from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Callable, TypeVar

import structlog

from kbase.errors import KnowledgeBaseError

logger = structlog.get_logger(logger_name=__name__)

T = TypeVar("T")


class ModelCallRunner:
    """Runs embedding/rerank model calls with a wall-clock timeout.

    A call that overruns is abandoned (its thread finishes in the background)
    and surfaces as ``error_cls`` so the caller's worker is released.
    """

    def __init__(self, *, timeout_seconds: float, max_workers: int = 4) -> None:
        if timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be > 0")
        self._timeout_seconds = timeout_seconds
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers,
            thread_name_prefix="kbase-model",
        )

    @property
    def timeout_seconds(self) -> float:
        return self._timeout_seconds

    def run(
        self,
        fn: Callable[..., T],
        *args: object,
        error_cls: type[KnowledgeBaseError],
        operation: str,
    ) -> T:
        future = self._executor.submit(fn, *args)
        try:
            return future.result(timeout=self._timeout_seconds)
        except FutureTimeoutError as exc:
            future.cancel()
            logger.warning(
                "model_call_timed_out",
                operation=operation,
                timeout_seconds=self._timeout_seconds,
            )
            raise error_cls(
                f"{operation} timed out after {self._timeout_seconds:.1f}s"
            ) from exc
        except KnowledgeBaseError:
            raise
        except Exception as exc:
            raise error_cls(f"{operation} failed: {exc}") from exc

    def shutdown(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)
