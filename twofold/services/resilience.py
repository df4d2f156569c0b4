from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

from sqlalchemy.exc import DBAPIError, InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from twofold.core.config import get_settings
from twofold.core.errors import TransientStoreError


logger = logging.getLogger(__name__)

T = TypeVar("T")

TransientException = (TimeoutError, OSError, OperationalError, InterfaceError)


def is_transient_store_error(exc: BaseException) -> bool:
    # Retry only connectivity-class failures; constraint and logic errors surface unchanged.
    if isinstance(exc, DBAPIError) and exc.connection_invalidated:
        return True
    return isinstance(exc, TransientException)


@dataclass(frozen=True)
class RetryPolicy:
    timeout_ms: int
    max_attempts: int
    backoff_ms: int


def default_store_policy() -> RetryPolicy:
    settings = get_settings()
    return RetryPolicy(
        timeout_ms=settings.store_call_timeout_ms,
        max_attempts=settings.store_retry_max_attempts,
        backoff_ms=settings.store_retry_backoff_ms,
    )


def default_migration_policy() -> RetryPolicy:
    settings = get_settings()
    return RetryPolicy(
        timeout_ms=settings.migration_step_timeout_ms,
        max_attempts=settings.migration_max_attempts,
        backoff_ms=settings.migration_backoff_ms,
    )


def backoff_delay_s(policy: RetryPolicy, attempt: int) -> float:
    # Exponential backoff with +/-50% jitter so parallel callers spread out.
    jitter = random.uniform(0.5, 1.5)
    return (policy.backoff_ms / 1000.0) * (2 ** (attempt - 1)) * jitter


async def retry_async(
    func: Callable[[], Awaitable[T]],
    *,
    policy: RetryPolicy,
    retryable: Callable[[BaseException], bool] | None = None,
    on_retry: Callable[[BaseException], Awaitable[None]] | None = None,
    label: str = "store_call",
) -> T:
    # Retry helper with jittered backoff; the last error is re-raised once attempts run out.
    retryable = retryable or is_transient_store_error
    attempt = 1
    while True:
        try:
            return await asyncio.wait_for(func(), timeout=policy.timeout_ms / 1000.0)
        except Exception as exc:  # noqa: BLE001 - caller handles non-transient failures
            if attempt >= max(policy.max_attempts, 1) or not retryable(exc):
                raise
            logger.warning(
                "retry_scheduled label=%s attempt=%s error=%s", label, attempt, type(exc).__name__
            )
            if on_retry is not None:
                await on_retry(exc)
            await asyncio.sleep(backoff_delay_s(policy, attempt))
            attempt += 1


async def with_store_retry(
    session: AsyncSession,
    func: Callable[[], Awaitable[T]],
    *,
    policy: RetryPolicy | None = None,
    label: str = "store_call",
) -> T:
    """Run a unit of work against the store, retrying transient failures.

    The session is rolled back between attempts so each retry starts from a
    clean transaction. Once attempts are exhausted the failure surfaces as
    ``TransientStoreError``; every other error propagates unchanged.
    """

    async def _rollback(_exc: BaseException) -> None:
        await session.rollback()

    try:
        return await retry_async(
            func,
            policy=policy or default_store_policy(),
            on_retry=_rollback,
            label=label,
        )
    except Exception as exc:
        if not is_transient_store_error(exc):
            raise
        await session.rollback()
        logger.error("store_unavailable label=%s error=%s", label, type(exc).__name__)
        raise TransientStoreError(f"Store unavailable during {label}") from exc


async def store_transaction(
    session: AsyncSession,
    func: Callable[[], Awaitable[T]],
    *,
    label: str,
    policy: RetryPolicy | None = None,
) -> T:
    # One commit per unit of work; any failure rolls the whole unit back before it propagates.
    async def _unit() -> T:
        try:
            result = await func()
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        return result

    return await with_store_retry(session, _unit, policy=policy, label=label)
