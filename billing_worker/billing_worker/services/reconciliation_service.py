"""Reconciliation scans for settlements the ledger has not fully caught up with.

* Bookkeeping failures: the transfer settled but phase 1 did not commit.
  Phase 1 is replayed with the stored transaction hash.
* Timed-out submissions: the execution service may or may not have settled.
  It is asked for the submission; if one exists, bookkeeping is completed.
* Uninvoiced payments: phase 2 did not run or failed.  The invoice is
  created now.

None of these scans submits a transfer.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta

from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from billing_engine.errors import ErrorKind
from billing_engine.state.database import session_scope
from billing_engine.state.repository import PaymentRepository, SettlementFailureRepository
from billing_worker.clients.execution_client import ExecutionService
from billing_worker.services.invoice_service import InvoiceService
from billing_worker.services.ledger import utcnow
from billing_worker.services.settlement_executor import SettlementExecutor, SettlementPlan

logger = logging.getLogger(__name__)


class ReconciliationService:
    """Close the gaps left by interrupted settlements.

    Parameters
    ----------
    session_factory:
        Factory for per-item sessions.
    executor:
        Replays phase 1 for a known transaction hash.
    execution_service:
        Looked up for submissions whose outcome is unknown.
    invoice_service:
        Phase-2 invoicer.
    batch_size:
        Maximum number of items handled per scan.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        executor: SettlementExecutor,
        execution_service: ExecutionService,
        *,
        invoice_service: InvoiceService | None = None,
        batch_size: int = 100,
    ) -> None:
        self._session_factory = session_factory
        self._executor = executor
        self._execution = execution_service
        self._invoices = invoice_service or InvoiceService()
        self._batch_size = batch_size

    async def complete_pending_bookkeeping(self, now: datetime | None = None) -> dict[str, int]:
        """Replay phase 1 for every open bookkeeping failure."""
        now = now or utcnow()
        summary = {"pending": 0, "completed": 0, "failed": 0}

        async with session_scope(self._session_factory) as session:
            rows = await SettlementFailureRepository(session).list_unresolved(
                error_kind=ErrorKind.BOOKKEEPING_FAILURE.value, limit=self._batch_size
            )
            pending: dict[str, tuple[str, dict]] = {}
            for row in rows:
                if row.transaction_hash and row.redemption_key not in pending:
                    pending[row.redemption_key] = (row.transaction_hash, row.request_json)
        summary["pending"] = len(pending)

        for key, (tx_hash, request) in pending.items():
            try:
                plan = SettlementPlan.model_validate(request)
                await self._executor.complete_bookkeeping(plan, tx_hash, submitted=False, now=now)
            except (OperationalError, InterfaceError):
                raise
            except Exception:
                logger.error("Bookkeeping for %s (tx %s) still failing", key, tx_hash, exc_info=True)
                summary["failed"] += 1
                continue
            summary["completed"] += 1

        logger.info(
            "Bookkeeping reconciliation: pending=%d completed=%d failed=%d",
            summary["pending"],
            summary["completed"],
            summary["failed"],
        )
        return summary

    async def resolve_timed_out_submissions(self, now: datetime | None = None) -> dict[str, int]:
        """Ask the execution service about submissions that timed out."""
        now = now or utcnow()
        summary = {"checked": 0, "settled": 0, "not_found": 0, "failed": 0}

        async with session_scope(self._session_factory) as session:
            rows = await SettlementFailureRepository(session).list_unresolved(timed_out=True, limit=self._batch_size)
            timed_out: dict[str, dict] = {}
            for row in rows:
                timed_out.setdefault(row.redemption_key, row.request_json)
        summary["checked"] = len(timed_out)

        for key, request in timed_out.items():
            try:
                tx_hash = await self._execution.find_submission(key)
                if tx_hash is None:
                    async with session_scope(self._session_factory) as session:
                        await SettlementFailureRepository(session).resolve_for_key(key, now)
                    logger.info("No submission found for timed-out %s; released for retry", key)
                    summary["not_found"] += 1
                    continue
                plan = SettlementPlan.model_validate(request)
                await self._executor.complete_bookkeeping(plan, tx_hash, submitted=False, now=now)
            except (OperationalError, InterfaceError):
                raise
            except Exception:
                logger.error("Could not resolve timed-out submission %s", key, exc_info=True)
                summary["failed"] += 1
                continue
            summary["settled"] += 1

        logger.info(
            "Timeout reconciliation: checked=%d settled=%d not_found=%d failed=%d",
            summary["checked"],
            summary["settled"],
            summary["not_found"],
            summary["failed"],
        )
        return summary

    async def invoice_unbilled_payments(
        self,
        older_than: timedelta = timedelta(minutes=15),
        now: datetime | None = None,
    ) -> dict[str, int]:
        """Create invoices for payments phase 2 never linked."""
        now = now or utcnow()
        summary = {"uninvoiced": 0, "invoiced": 0, "failed": 0}

        async with session_scope(self._session_factory) as session:
            payments = await PaymentRepository(session).list_uninvoiced(now - older_than, limit=self._batch_size)
            payment_ids = [p.payment_id for p in payments]
        summary["uninvoiced"] = len(payment_ids)

        for payment_id in payment_ids:
            try:
                async with session_scope(self._session_factory) as session:
                    await self._invoices.invoice_payment(session, payment_id, now=now)
            except (OperationalError, InterfaceError):
                raise
            except Exception:
                logger.error("Invoice for payment %s failed", payment_id, exc_info=True)
                summary["failed"] += 1
                continue
            summary["invoiced"] += 1

        logger.info(
            "Invoice reconciliation: uninvoiced=%d invoiced=%d failed=%d",
            summary["uninvoiced"],
            summary["invoiced"],
            summary["failed"],
        )
        return summary
