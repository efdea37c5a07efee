"""
Batch driver: converts many independent interchanges.

Each worker thread builds its own ``ConversionService`` through the factory
and keeps it for the lifetime of the batch; loaded schemas and mapping
definitions may be shared through the factory since nothing mutates them.
Results come back in input order. The timeout covers the whole batch;
inputs still pending when it expires are reported as timed out.
"""
import logging
import threading
import time
from concurrent.futures import ALL_COMPLETED, ThreadPoolExecutor, wait
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence, Union

from pydantic import BaseModel

from conversion_service import ConversionService
from edifact_errors import EdifactError

logger = logging.getLogger(__name__)

ServiceFactory = Callable[[], ConversionService]


class ItemStatus(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    TIMED_OUT = "timed_out"


class BatchItemResult(BaseModel):
    index: int
    status: ItemStatus
    data: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    duration_ms: float = 0

    @property
    def ok(self) -> bool:
        return self.status == ItemStatus.COMPLETED


def _convert_one(index: int, data: Union[bytes, str], service: ConversionService) -> BatchItemResult:
    started = time.perf_counter()
    try:
        interchange = service.convert(data)
        if interchange is None:
            logger.error(f"Batch item {index} failed: conversion returned no interchange")
            status, payload, error, code = ItemStatus.FAILED, None, "Conversion returned no interchange", "INTERNAL_ERROR"
        else:
            status, payload, error, code = ItemStatus.COMPLETED, interchange.to_json_dict(), None, None
    except EdifactError as e:
        logger.warning(f"Batch item {index} failed: [{e.code}] {e.message}")
        status, payload, error, code = ItemStatus.FAILED, None, e.message, e.code
    except Exception as e:
        logger.error(f"Batch item {index} failed unexpectedly: {e}", exc_info=True)
        status, payload, error, code = ItemStatus.FAILED, None, str(e), "INTERNAL_ERROR"
    return BatchItemResult(
        index=index,
        status=status,
        data=payload,
        error=error,
        error_code=code,
        duration_ms=(time.perf_counter() - started) * 1000,
    )


def convert_sequential(inputs: Sequence[Union[bytes, str]], service: ConversionService) -> List[BatchItemResult]:
    """Single-threaded variant; one service for every input."""
    return [_convert_one(index, data, service) for index, data in enumerate(inputs)]


def convert_batch(
    inputs: Sequence[Union[bytes, str]],
    service_factory: ServiceFactory,
    max_workers: int = 4,
    timeout: Optional[float] = None,
) -> List[BatchItemResult]:
    if not inputs:
        return []

    local = threading.local()

    def work(index: int, data: Union[bytes, str]) -> BatchItemResult:
        service = getattr(local, "service", None)
        if service is None:
            service = local.service = service_factory()
        return _convert_one(index, data, service)

    logger.info(f"Starting batch of {len(inputs)} input(s) on {max_workers} worker(s)")
    executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="edifact-batch")
    try:
        futures = [executor.submit(work, index, data) for index, data in enumerate(inputs)]
        done, _ = wait(futures, timeout=timeout, return_when=ALL_COMPLETED)
    finally:
        executor.shutdown(wait=timeout is None, cancel_futures=True)

    results = []
    for index, future in enumerate(futures):
        if future in done and future.exception() is not None:
            error = future.exception()
            logger.error(f"Batch worker for item {index} could not start: {error}")
            results.append(BatchItemResult(
                index=index,
                status=ItemStatus.FAILED,
                error=str(error),
                error_code=getattr(error, "code", "INTERNAL_ERROR"),
            ))
        elif future in done:
            results.append(future.result())
        else:
            results.append(BatchItemResult(
                index=index,
                status=ItemStatus.TIMED_OUT,
                error=f"Not finished within {timeout}s",
                error_code="TIMEOUT",
            ))
    failed = sum(1 for r in results if not r.ok)
    logger.info(f"Batch finished: {len(results) - failed} completed, {failed} failed or timed out")
    return results
