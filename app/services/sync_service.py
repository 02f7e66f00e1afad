"""One-way order sync: external source → orders table.

Strategy:
  - Watermark:    max(last_synced_at) in the store, or now - 7 days when
                  nothing has been synced yet
  - Pull:         records modified strictly after the watermark, oldest first
  - Reconcile:    update when the external id is known, insert otherwise;
                  records are handled one at a time and a failing record is
                  rolled back and reported without stopping the run
  - Exclusion:    a second run while one is in progress is skipped, never queued
  - Retry:        failed runs are retried with delays of 3s, 9s, 27s, ...
  - Stale runs:   a run exceeding SYNC_MAX_RUN_SECONDS is cancelled and
                  reported as a hard failure; its store is abandoned so a
                  write still running on a worker thread rolls back
"""

import asyncio
import logging
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from app.core.config import settings
from app.core.exceptions import InvalidExternalOrderError, SyncFailedError
from app.services.order_source import ExternalOrder, OrderSource
from app.services.order_store import OrderStore
from app.services.status_mapping import normalize_status

logger = logging.getLogger(__name__)

SYNC_ACTOR = "Salesforce Sync"
ORDER_NUMBER_MAX_LENGTH = 20
CENTS = Decimal("0.01")


class SyncOutcome(str, Enum):
    SUCCEEDED = "succeeded"
    PARTIALLY_FAILED = "partially_failed"
    HARD_FAILED = "hard_failed"
    SKIPPED = "skipped"


@dataclass
class RecordError:
    external_id: Optional[str]
    order_number: Optional[str]
    error: str


@dataclass
class SyncResult:
    outcome: SyncOutcome
    inserted: int = 0
    updated: int = 0
    errors: int = 0
    total: int = 0
    duration_ms: int = 0
    error_details: List[RecordError] = field(default_factory=list)
    error: Optional[str] = None
    retryable: bool = True
    attempts: int = 1
    message: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.outcome in (SyncOutcome.SUCCEEDED, SyncOutcome.PARTIALLY_FAILED)

    @property
    def skipped(self) -> bool:
        return self.outcome == SyncOutcome.SKIPPED

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["outcome"] = self.outcome.value
        data["success"] = self.success
        data["skipped"] = self.skipped
        return data


@dataclass
class SyncStats:
    total_runs: int = 0
    successful_runs: int = 0
    failed_runs: int = 0
    skipped_runs: int = 0
    last_sync_at: Optional[datetime] = None
    last_error: Optional[str] = None
    last_result: Optional[Dict[str, Any]] = None


def _setting(value, default):
    return default if value is None else value


def _check_attempts(max_attempts: int) -> int:
    if max_attempts < 1:
        raise ValueError(f"max_attempts must be at least 1, got {max_attempts}")
    return max_attempts


class SyncService:
    def __init__(
        self,
        source: OrderSource,
        store_factory: Callable[[], OrderStore],
        initial_lookback: Optional[timedelta] = None,
        max_run_seconds: Optional[float] = None,
        max_attempts: Optional[int] = None,
        retry_base_seconds: Optional[float] = None,
        default_client_email: Optional[str] = None,
        default_client_name: Optional[str] = None,
    ):
        self.source = source
        self._store_factory = store_factory
        if initial_lookback is None:
            initial_lookback = timedelta(days=settings.SYNC_INITIAL_LOOKBACK_DAYS)
        self.initial_lookback = initial_lookback
        self.max_run_seconds = _setting(max_run_seconds, settings.SYNC_MAX_RUN_SECONDS)
        self.max_attempts = _check_attempts(_setting(max_attempts, settings.SYNC_MAX_ATTEMPTS))
        self.retry_base_seconds = _setting(retry_base_seconds, settings.SYNC_RETRY_BASE_SECONDS)
        self.default_client_email = _setting(default_client_email, settings.DEFAULT_CLIENT_EMAIL)
        self.default_client_name = _setting(default_client_name, settings.DEFAULT_CLIENT_NAME)

        self._running = False
        self._run_started_at: Optional[datetime] = None
        self._default_owner_id: Optional[int] = None
        self._stats = SyncStats()

    @property
    def is_running(self) -> bool:
        return self._running

    # -----------------------------------------------------------------------
    # Public operations
    # -----------------------------------------------------------------------

    async def run_sync(self) -> SyncResult:
        if self._running:
            logger.info("Sync already in progress (started %s), skipping", self._run_started_at)
            self._stats.skipped_runs += 1
            return SyncResult(outcome=SyncOutcome.SKIPPED, message="Sync already in progress")

        self._running = True
        self._run_started_at = datetime.now(timezone.utc)
        started = time.monotonic()
        result = SyncResult(outcome=SyncOutcome.SUCCEEDED)

        try:
            try:
                await asyncio.wait_for(self._run(result), timeout=self.max_run_seconds)
            except asyncio.TimeoutError:
                result.outcome = SyncOutcome.HARD_FAILED
                result.error = f"Sync exceeded {self.max_run_seconds:g}s and was abandoned"
                logger.error(result.error)
            except Exception as e:
                result.outcome = SyncOutcome.HARD_FAILED
                result.error = str(e) or e.__class__.__name__
                result.retryable = getattr(e, "retryable", True)
                logger.exception("Sync run failed")

            result.duration_ms = int((time.monotonic() - started) * 1000)
            self._record(result)
            return result
        finally:
            self._running = False
            self._run_started_at = None

    async def run_sync_with_retry(self, max_attempts: Optional[int] = None) -> SyncResult:
        max_attempts = _check_attempts(_setting(max_attempts, self.max_attempts))
        last_error: Optional[str] = None

        for attempt in range(1, max_attempts + 1):
            logger.info("Sync attempt %d/%d", attempt, max_attempts)
            try:
                result = await self.run_sync()
            except Exception as e:
                logger.exception("Sync attempt %d raised", attempt)
                last_error = str(e) or e.__class__.__name__
                retryable = getattr(e, "retryable", True)
            else:
                if result.success or result.skipped:
                    result.attempts = attempt
                    return result
                last_error = result.error
                retryable = result.retryable

            if not retryable:
                logger.error("Sync failure is not retryable, giving up: %s", last_error)
                raise SyncFailedError(last_error, attempt)

            if attempt < max_attempts:
                delay = self.retry_base_seconds ** attempt
                logger.warning("Sync attempt %d failed (%s), retrying in %gs", attempt, last_error, delay)
                await asyncio.sleep(delay)

        raise SyncFailedError(last_error, max_attempts)

    def get_stats(self) -> Dict[str, Any]:
        return {
            **asdict(self._stats),
            "is_running": self._running,
            "run_started_at": self._run_started_at,
        }

    # -----------------------------------------------------------------------
    # Store reconciliation helpers
    # -----------------------------------------------------------------------

    async def exists_by_external_id(self, store: OrderStore, external_id: str) -> Optional[int]:
        order = await self._in_thread(store, store.find_by_external_id, external_id)
        return order.id if order is not None else None

    async def resolve_default_owner(self, store: OrderStore) -> int:
        if self._default_owner_id is None:
            self._default_owner_id = await self._in_thread(
                store,
                store.get_or_create_client,
                self.default_client_email,
                self.default_client_name,
            )
        return self._default_owner_id

    # -----------------------------------------------------------------------
    # Internal helpers
    # -----------------------------------------------------------------------

    async def _run(self, result: SyncResult) -> None:
        store = self._store_factory()
        try:
            since = await self._watermark(store)
            records = await self.source.query_changed_since(since)
            result.total = len(records)
            logger.info("%d order(s) changed since %s", len(records), since.isoformat())

            if not records:
                result.message = "No changes to synchronise"
                return

            for record in records:
                try:
                    inserted = await self._reconcile(store, record)
                except Exception as e:
                    await self._in_thread(store, store.rollback)
                    result.errors += 1
                    result.error_details.append(RecordError(
                        external_id=record.external_id,
                        order_number=record.order_number,
                        error=str(e) or e.__class__.__name__,
                    ))
                    logger.warning("Order %s (%s) not synced: %s", record.order_number, record.external_id, e)
                    continue

                if inserted:
                    result.inserted += 1
                else:
                    result.updated += 1

            if result.errors:
                result.outcome = SyncOutcome.PARTIALLY_FAILED
            logger.info(
                "Sync finished: %d inserted, %d updated, %d failed",
                result.inserted, result.updated, result.errors,
            )
        except asyncio.CancelledError:
            # Timed out: a worker thread may still hold the session
            store.abandon()
            raise
        finally:
            store.close()

    @staticmethod
    async def _in_thread(store: OrderStore, method: Callable[..., Any], *args: Any) -> Any:
        return await asyncio.to_thread(store.call, method, *args)

    async def _watermark(self, store: OrderStore) -> datetime:
        last_synced = await self._in_thread(store, store.find_max_last_synced_at)
        if last_synced is not None:
            return last_synced
        since = datetime.now(timezone.utc) - self.initial_lookback
        logger.info("No previous sync found, pulling changes since %s", since.isoformat())
        return since

    async def _reconcile(self, store: OrderStore, record: ExternalOrder) -> bool:
        """Upsert one record. Returns True when a new order was inserted."""
        fields = self._order_fields(record)
        now = datetime.now(timezone.utc)
        fields.update(
            last_modified_at=record.last_modified or now,
            last_modified_by=SYNC_ACTOR,
            last_synced_at=now,
        )

        existing_id = await self.exists_by_external_id(store, record.external_id)
        if existing_id is not None:
            await self._in_thread(store, store.update, existing_id, fields)
            logger.debug("Updated order %s", record.order_number)
            return False

        order_number = record.order_number
        if not isinstance(order_number, str) or not order_number.strip():
            raise InvalidExternalOrderError("order_number", "missing")
        if len(order_number) > ORDER_NUMBER_MAX_LENGTH:
            raise InvalidExternalOrderError("order_number", f"longer than {ORDER_NUMBER_MAX_LENGTH} characters")

        owner_id = await self._resolve_owner(store, record.owner_email)
        fields.update(
            external_id=record.external_id,
            order_number=order_number.strip(),
            client_id=owner_id,
            created_by=SYNC_ACTOR,
        )
        await self._in_thread(store, store.insert, fields)
        logger.debug("Inserted order %s", record.order_number)
        return True

    async def _resolve_owner(self, store: OrderStore, owner_email: Optional[str]) -> int:
        if owner_email:
            client_id = await self._in_thread(store, store.find_client_id_by_email, owner_email)
            if client_id is not None:
                return client_id
        return await self.resolve_default_owner(store)

    def _order_fields(self, record: ExternalOrder) -> Dict[str, Any]:
        if not record.external_id:
            raise InvalidExternalOrderError("external_id", "missing")

        raw_amount = record.amount if record.amount is not None else 0
        try:
            amount = Decimal(str(raw_amount)).quantize(CENTS)
        except (InvalidOperation, ValueError):
            raise InvalidExternalOrderError("amount", f"not a number: {raw_amount!r}")
        if not amount.is_finite() or amount < 0:
            raise InvalidExternalOrderError("amount", f"must be non-negative, got {raw_amount!r}")

        return {
            "amount": amount,
            "status": normalize_status(record.status),
            "description": record.description or None,
        }

    def _record(self, result: SyncResult) -> None:
        self._stats.total_runs += 1
        if result.success:
            self._stats.successful_runs += 1
            self._stats.last_sync_at = datetime.now(timezone.utc)
        else:
            self._stats.failed_runs += 1
            self._stats.last_error = result.error
        self._stats.last_result = result.to_dict()
