from __future__ import annotations

import asyncio
import logging
import math
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import Any, Callable

from marketing import retry
from marketing.attribution import (
    PAYMENT_EVENT_TYPES,
    TransactionData,
    attribute_transaction,
    transaction_from_raw_event,
)
from marketing.repo import Repo
from marketing.util import chunk_list, iso_utc, now_utc

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BatchConfig:
    batch_size: int = 100
    max_concurrent: int = 5
    retry_attempts: int = 3
    retry_delay_ms: float = 1000


@dataclass
class BatchProgress:
    total: int
    processed: int = 0
    successful: int = 0
    failed: int = 0
    started_at: datetime = field(default_factory=now_utc)
    estimated_completion: datetime | None = None
    current_batch: int = 0
    total_batches: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "processed": self.processed,
            "successful": self.successful,
            "failed": self.failed,
            "started_at": self.started_at.isoformat(),
            "estimated_completion": self.estimated_completion.isoformat() if self.estimated_completion else None,
            "current_batch": self.current_batch,
            "total_batches": self.total_batches,
        }


@dataclass
class BatchResult:
    success: bool
    progress: BatchProgress
    errors: list[dict[str, str]] = field(default_factory=list)
    conversions: list[dict[str, Any]] = field(default_factory=list)
    already_attributed: int = 0


async def _attribute_with_retry(
    repo: Repo, user_id: str, txn: TransactionData, config: BatchConfig
) -> tuple[dict[str, Any] | None, str | None]:
    last_error = "Max retries exceeded"
    for attempt in range(1, config.retry_attempts + 1):
        try:
            conversion = await asyncio.to_thread(attribute_transaction, repo, user_id, txn)
            return conversion, None
        except Exception as e:  # noqa: BLE001
            last_error = str(e) or type(e).__name__
            if attempt < config.retry_attempts:
                logger.warning(
                    "retry %d/%d for %s: %s", attempt, config.retry_attempts, txn.transaction_id, last_error
                )
                await retry.sleep(config.retry_delay_ms * attempt)
    return None, last_error


async def _process_batch(
    repo: Repo, user_id: str, transactions: list[TransactionData], config: BatchConfig
) -> tuple[list[dict[str, Any]], list[dict[str, str]]]:
    successful: list[dict[str, Any]] = []
    errors: list[dict[str, str]] = []
    for group in chunk_list(transactions, config.max_concurrent):
        results = await asyncio.gather(*(_attribute_with_retry(repo, user_id, t, config) for t in group))
        for txn, (conversion, error) in zip(group, results):
            if conversion is not None:
                successful.append(conversion)
            else:
                errors.append({"transaction_id": txn.transaction_id, "error": error or "Unknown error"})
    return successful, errors


def pending_transactions(repo: Repo, user_id: str, start: datetime, end: datetime) -> tuple[list[TransactionData], int]:
    """Payment transactions in range without a verified conversion, plus the already-attributed count."""
    events = repo.list_raw_events(
        user_id=user_id,
        event_types=PAYMENT_EVENT_TYPES,
        start=iso_utc(start),
        end=iso_utc(end),
    )
    txns = [t for t in (transaction_from_raw_event(e) for e in events) if t is not None]
    existing = repo.attributed_transaction_ids(t.transaction_id for t in txns)
    return [t for t in txns if t.transaction_id not in existing], len(existing)


async def run_batch_attribution(
    repo: Repo,
    user_id: str,
    start: datetime,
    end: datetime,
    config: BatchConfig | None = None,
    on_progress: Callable[[BatchProgress], None] | None = None,
) -> BatchResult:
    config = config or BatchConfig()
    started_at = now_utc()

    transactions, already = pending_transactions(repo, user_id, start, end)
    batches = chunk_list(transactions, config.batch_size)
    progress = BatchProgress(total=len(transactions), started_at=started_at, total_batches=len(batches))
    logger.info(
        "batch attribution user=%s transactions=%d batches=%d already_attributed=%d",
        user_id,
        len(transactions),
        len(batches),
        already,
    )

    result = BatchResult(success=True, progress=progress, already_attributed=already)
    for i, batch in enumerate(batches, start=1):
        progress.current_batch = i
        successful, errors = await _process_batch(repo, user_id, batch, config)
        result.conversions.extend(successful)
        result.errors.extend(errors)

        progress.processed += len(batch)
        progress.successful += len(successful)
        progress.failed += len(errors)

        elapsed = max((now_utc() - started_at).total_seconds(), 1e-6)
        remaining = progress.total - progress.processed
        progress.estimated_completion = now_utc() + timedelta(seconds=remaining * elapsed / progress.processed)
        if on_progress is not None:
            on_progress(replace(progress))

    result.success = progress.failed == 0
    logger.info(
        "batch attribution done user=%s successful=%d failed=%d",
        user_id,
        progress.successful,
        progress.failed,
    )
    return result


def estimate_batch_duration(
    repo: Repo, user_id: str, start: datetime, end: datetime, config: BatchConfig | None = None
) -> dict[str, int]:
    """Roughly 100ms per transaction, divided across the concurrency limit."""
    config = config or BatchConfig()
    count = len(
        repo.list_raw_events(
            user_id=user_id,
            event_types=PAYMENT_EVENT_TYPES,
            start=iso_utc(start),
            end=iso_utc(end),
        )
    )
    return {"estimated_ms": math.ceil(count * 100 / config.max_concurrent), "transaction_count": count}
