from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Hashable, Sequence, TypeVar

from forma.errors import BatchConfigError
from forma.models import BatchFailure, BatchOutcome


logger = logging.getLogger(__name__)

T = TypeVar("T")

ProgressCallback = Callable[[int, int], None]
SleepFunc = Callable[[float], Awaitable[Any]]


class CancellationToken:
    """Cooperative cancel flag, checked by ``run_batched`` between chunks."""

    def __init__(self) -> None:
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        return self._cancelled


def chunked(items: Sequence[T], size: int) -> list[Sequence[T]]:
    if size <= 0:
        raise BatchConfigError(f"batch_size must be positive, got {size}")
    return [items[index : index + size] for index in range(0, len(items), size)]


def _error_message(exc: BaseException) -> str:
    text = str(exc).strip()
    return text or type(exc).__name__


async def run_batched(
    targets: Sequence[T],
    operation: Callable[[T], Awaitable[Any]],
    batch_size: int,
    inter_batch_delay_ms: int,
    on_progress: ProgressCallback | None = None,
    *,
    key: Callable[[T], Hashable] | None = None,
    cancel_token: CancellationToken | None = None,
    sleep: SleepFunc = asyncio.sleep,
) -> BatchOutcome:
    """Apply ``operation`` to every target in paced, bounded-size chunks.

    Each chunk runs concurrently and is fully settled before the next one
    starts; a failing item never stops its siblings or later chunks. Failures
    are collected in the outcome, not raised. ``key`` maps a target to the
    identifier stored in ``succeeded`` (the target itself by default).
    """
    if batch_size <= 0:
        raise BatchConfigError(f"batch_size must be positive, got {batch_size}")
    if inter_batch_delay_ms < 0:
        raise BatchConfigError(f"inter_batch_delay_ms must not be negative, got {inter_batch_delay_ms}")

    total = len(targets)
    outcome = BatchOutcome(total=total)
    if total == 0:
        return outcome

    identify = key or (lambda target: target)
    chunks = chunked(targets, batch_size)
    for index, chunk in enumerate(chunks):
        if cancel_token is not None and cancel_token.cancelled:
            outcome.cancelled = True
            logger.info("Batch run cancelled after %d of %d item(s)", outcome.attempted, total)
            break

        results = await asyncio.gather(*(operation(target) for target in chunk), return_exceptions=True)
        for target, result in zip(chunk, results):
            if isinstance(result, BaseException):
                if not isinstance(result, Exception):
                    raise result
                outcome.failed.append(BatchFailure(target=target, message=_error_message(result), exception=result))
                logger.warning("Batch item %r failed: %s", target, _error_message(result))
            else:
                outcome.succeeded.add(identify(target))
        outcome.attempted += len(chunk)

        if on_progress is not None:
            on_progress(outcome.attempted, total)

        is_last = index == len(chunks) - 1
        if not is_last and inter_batch_delay_ms > 0:
            if cancel_token is not None and cancel_token.cancelled:
                continue
            await sleep(inter_batch_delay_ms / 1000)

    logger.info(
        "Batch run finished: %d attempted, %d succeeded, %d failed (of %d)",
        outcome.attempted,
        len(outcome.succeeded),
        len(outcome.failed),
        total,
    )
    return outcome
