"""
Credit Ledger Service - Append-only credit ledger with a denormalized balance.

NO DICTIONARIES - All operations use strongly typed domain models.

Every mutation follows the same pattern:
1. Short-circuit on an existing idempotency key
2. Lock the balance row (SELECT FOR UPDATE, created in a SAVEPOINT when absent)
3. Re-check the idempotency key under the lock
4. Append the ledger entry and move the balance by the same delta
5. Flush, read back and verify, commit

The unique constraint on idempotency_key is the last guard: a commit that loses
the race rolls back and returns the winner's stored result.
"""

from datetime import UTC, datetime
from decimal import Decimal, InvalidOperation

import structlog
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from metering.db.models import CreditLedgerEntry, FeatureCreditBalance
from metering.db.retry import with_store_retry
from metering.exceptions import (
    ConcurrencyError,
    DataIntegrityError,
    IdempotencyConflictError,
    InvalidQuantityError,
    MissingIdempotencyKeyError,
    WriteVerificationError,
)
from metering.models.api import LedgerEntryType, MeteringScope
from metering.models.domain import (
    ZERO,
    CreditBalance,
    CreditConsumeResult,
    ExpireResult,
    GrantResult,
    LedgerEntryData,
    ReconciliationReport,
    TenantScope,
)
from metering.observability.events import MeteringEvent, MeteringEventSink, default_event_sink
from metering.observability.metrics import metrics
from metering.observability.tracing import trace_operation

logger = structlog.get_logger(__name__)


def _utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


def validate_quantity(value: object) -> Decimal:
    """
    Coerce a quantity/amount to Decimal.

    Raises:
        InvalidQuantityError: If it is not a finite number greater than zero
    """
    if isinstance(value, bool) or value is None:
        raise InvalidQuantityError(value)
    try:
        quantity = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise InvalidQuantityError(value) from None
    if not quantity.is_finite() or quantity <= 0:
        raise InvalidQuantityError(value)
    return quantity


def validate_idempotency_key(key: str | None) -> str:
    """
    Raises:
        MissingIdempotencyKeyError: If the key is missing or blank
    """
    if key is None or not key.strip():
        raise MissingIdempotencyKeyError()
    return key


def expiry_idempotency_key(row: FeatureCreditBalance) -> str:
    """Deterministic key of the EXPIRE entry for a balance row's current expiry."""
    if row.expires_at is None:
        raise DataIntegrityError(f"Balance row {row.id} has no expiry to record")
    return f"expire:{row.id}:{row.expires_at.astimezone(UTC).isoformat()}"


def readable_balance(row: FeatureCreditBalance | None, now: datetime) -> Decimal:
    """Balance as readers must see it: expired balances read as zero."""
    if row is None:
        return ZERO
    if row.expires_at is not None and row.expires_at <= now:
        return ZERO
    return row.balance


def _scope_filter(scope: TenantScope, feature_key: str | None = None) -> list:
    clauses = [
        FeatureCreditBalance.scope == scope.kind.value,
        FeatureCreditBalance.agency_id == scope.agency_id,
        FeatureCreditBalance.sub_account_id == scope.sub_account_key,
    ]
    if feature_key is not None:
        clauses.append(FeatureCreditBalance.feature_key == feature_key)
    return clauses


def _ledger_scope_filter(scope: TenantScope, feature_key: str | None = None) -> list:
    clauses = [
        CreditLedgerEntry.scope == scope.kind.value,
        CreditLedgerEntry.agency_id == scope.agency_id,
        CreditLedgerEntry.sub_account_id == scope.sub_account_key,
    ]
    if feature_key is not None:
        clauses.append(CreditLedgerEntry.feature_key == feature_key)
    return clauses


class CreditLedgerService:
    """
    Owns FeatureCreditBalance and CreditLedgerEntry: every mutation goes through here.

    Invariant after every commit: sum(ledger delta) == balance, per (scope, feature).
    """

    def __init__(
        self, session: AsyncSession, events: MeteringEventSink = default_event_sink
    ) -> None:
        self.session = session
        self.events = events

    # ========================================================================
    # Public operations
    # ========================================================================

    async def grant(
        self,
        scope: TenantScope,
        feature_key: str,
        amount: object,
        reason: str,
        idempotency_key: str | None,
        expires_at: datetime | None = None,
        now: datetime | None = None,
    ) -> GrantResult:
        """
        Append a GRANT entry and increase the balance.

        Replaying the same idempotency key returns the stored post-grant balance.

        Raises:
            InvalidQuantityError: Amount not finite and positive
            MissingIdempotencyKeyError: Blank key
            IdempotencyConflictError: Key already used for a different operation
            DatabaseError: Store unavailable after bounded retries
        """
        quantity = validate_quantity(amount)
        key = validate_idempotency_key(idempotency_key)

        async def attempt() -> GrantResult:
            return await self._grant_once(
                scope, feature_key, quantity, reason, key, expires_at, now or _utc_now()
            )

        return await with_store_retry(self.session, "credit_grant", attempt)

    async def consume(
        self,
        scope: TenantScope,
        feature_key: str,
        amount: object,
        idempotency_key: str | None,
        reason: str = "Credit consumption",
        now: datetime | None = None,
    ) -> CreditConsumeResult:
        """
        Append a CONSUME entry iff the non-expired balance covers the amount.

        An insufficient balance returns success=False and mutates nothing.
        """
        quantity = validate_quantity(amount)
        key = validate_idempotency_key(idempotency_key)

        async def attempt() -> CreditConsumeResult:
            return await self._consume_once(
                scope, feature_key, quantity, reason, key, now or _utc_now()
            )

        return await with_store_retry(self.session, "credit_consume", attempt)

    async def expire_stale(self, now: datetime | None = None) -> ExpireResult:
        """
        Zero every balance whose expiry has passed, appending one EXPIRE entry each.

        Each row is its own transaction; the deterministic entry key makes a rerun a no-op.
        """
        now = now or _utc_now()
        stmt = select(FeatureCreditBalance.id).where(
            FeatureCreditBalance.expires_at.is_not(None),
            FeatureCreditBalance.expires_at <= now,
            FeatureCreditBalance.balance > 0,
        )
        row_ids = list((await self.session.execute(stmt)).scalars().all())
        await self.session.rollback()

        expired = 0
        for row_id in row_ids:

            async def attempt(row_id: object = row_id) -> bool:
                return await self._expire_row_once(row_id, now)

            if await with_store_retry(self.session, "credit_expire", attempt):
                expired += 1

        logger.info("expire_stale_complete", now=now.isoformat(), expired_count=expired)
        return ExpireResult(expired_count=expired)

    async def get_balances(
        self,
        scope: TenantScope,
        feature_key: str | None = None,
        now: datetime | None = None,
    ) -> list[CreditBalance]:
        """Non-expired balances for a scope (expired rows are filtered at read time)."""
        now = now or _utc_now()
        stmt = (
            select(FeatureCreditBalance)
            .where(
                *_scope_filter(scope, feature_key),
                (FeatureCreditBalance.expires_at.is_(None))
                | (FeatureCreditBalance.expires_at > now),
            )
            .order_by(FeatureCreditBalance.feature_key)
        )
        result = await self.session.execute(stmt)
        return [
            CreditBalance(
                feature_key=row.feature_key,
                balance=row.balance,
                expires_at=row.expires_at,
                updated_at=row.updated_at,
            )
            for row in result.scalars().all()
        ]

    async def get_available_balance(
        self, scope: TenantScope, feature_key: str, now: datetime | None = None
    ) -> Decimal:
        stmt = select(FeatureCreditBalance).where(*_scope_filter(scope, feature_key))
        row = (await self.session.execute(stmt)).scalar_one_or_none()
        return readable_balance(row, now or _utc_now())

    async def list_entries(
        self,
        scope: TenantScope,
        feature_key: str | None = None,
        limit: int = 50,
    ) -> list[LedgerEntryData]:
        """Ledger history for a scope, newest first."""
        stmt = (
            select(CreditLedgerEntry)
            .where(*_ledger_scope_filter(scope, feature_key))
            .order_by(CreditLedgerEntry.created_at.desc(), CreditLedgerEntry.id.desc())
            .limit(limit)
        )
        result = await self.session.execute(stmt)
        return [self._entry_to_domain(row) for row in result.scalars().all()]

    async def reconcile(self, scope: TenantScope, feature_key: str) -> ReconciliationReport:
        """Compare the ledger sum with the stored balance."""
        sum_stmt = select(func.coalesce(func.sum(CreditLedgerEntry.delta), 0)).where(
            *_ledger_scope_filter(scope, feature_key)
        )
        ledger_sum = Decimal((await self.session.execute(sum_stmt)).scalar_one())

        row_stmt = select(FeatureCreditBalance).where(*_scope_filter(scope, feature_key))
        row = (await self.session.execute(row_stmt)).scalar_one_or_none()
        balance = row.balance if row else ZERO

        report = ReconciliationReport(
            feature_key=feature_key, ledger_sum=ledger_sum, balance=balance
        )
        if not report.consistent:
            logger.error(
                "ledger_balance_mismatch",
                agency_id=scope.agency_id,
                sub_account_id=scope.sub_account_id,
                feature_key=feature_key,
                ledger_sum=str(ledger_sum),
                balance=str(balance),
            )
        return report

    # ========================================================================
    # Within-transaction helpers (also used by the usage engine)
    # ========================================================================

    async def lock_balance(self, scope: TenantScope, feature_key: str) -> FeatureCreditBalance:
        """
        Lock the balance row for update (SELECT FOR UPDATE), creating it when absent.

        Creation happens in a SAVEPOINT; losing a concurrent insert race re-reads the
        winner's row.
        """
        row = await self._select_balance_for_update(scope, feature_key)
        if row is not None:
            return row

        try:
            async with self.session.begin_nested():
                self.session.add(
                    FeatureCreditBalance(
                        scope=scope.kind.value,
                        agency_id=scope.agency_id,
                        sub_account_id=scope.sub_account_key,
                        feature_key=feature_key,
                        balance=ZERO,
                    )
                )
        except IntegrityError:
            logger.debug("balance_row_created_concurrently", feature_key=feature_key)

        row = await self._select_balance_for_update(scope, feature_key)
        if row is None:
            raise ConcurrencyError(f"feature_credit_balance:{scope.agency_id}:{feature_key}")
        return row

    async def find_entry(self, idempotency_key: str) -> CreditLedgerEntry | None:
        """Find ledger entry by idempotency key."""
        stmt = select(CreditLedgerEntry).where(CreditLedgerEntry.idempotency_key == idempotency_key)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def expire_if_due(
        self, row: FeatureCreditBalance, now: datetime
    ) -> CreditLedgerEntry | None:
        """On a locked row: zero an expired balance exactly as the sweep would."""
        if row.expires_at is None or row.expires_at > now:
            return None
        if row.balance <= 0:
            row.expires_at = None
            return None

        key = expiry_idempotency_key(row)
        if await self.find_entry(key) is not None:
            raise DataIntegrityError(f"Expiry {key} already recorded but balance is {row.balance}")

        expired_amount = row.balance
        entry = self.append_entry(
            row,
            LedgerEntryType.EXPIRE,
            -expired_amount,
            reason="Credits expired",
            idempotency_key=key,
            now=now,
        )
        row.expires_at = None
        self.events.emit(
            MeteringEvent.CREDITS_EXPIRED,
            agency_id=row.agency_id,
            sub_account_id=row.sub_account_id or None,
            feature_key=row.feature_key,
            amount=expired_amount,
        )
        return entry

    def append_entry(
        self,
        row: FeatureCreditBalance,
        entry_type: LedgerEntryType,
        delta: Decimal,
        reason: str,
        idempotency_key: str,
        now: datetime,
    ) -> CreditLedgerEntry:
        """Append a ledger entry on a locked row and move its balance by the same delta."""
        balance_after = row.balance + delta
        if balance_after < 0:
            raise DataIntegrityError(
                f"Balance for {row.feature_key} would go negative: {row.balance} + {delta}"
            )

        entry = CreditLedgerEntry(
            scope=row.scope,
            agency_id=row.agency_id,
            sub_account_id=row.sub_account_id,
            feature_key=row.feature_key,
            type=entry_type.value,
            delta=delta,
            balance_after=balance_after,
            reason=reason,
            idempotency_key=idempotency_key,
            created_at=now,
        )
        row.balance = balance_after
        row.updated_at = now
        self.session.add(entry)
        return entry

    async def verify_balance(self, row: FeatureCreditBalance, expected: Decimal) -> None:
        """Flush, read back and verify the balance row."""
        await self.session.flush()
        verified = await self.session.get(FeatureCreditBalance, row.id)
        if verified is None:
            raise WriteVerificationError(f"Balance row {row.id} disappeared after update")
        if verified.balance != expected:
            raise DataIntegrityError(
                f"Balance mismatch: expected {expected}, got {verified.balance}"
            )

    # ========================================================================
    # Single attempts
    # ========================================================================

    async def _grant_once(
        self,
        scope: TenantScope,
        feature_key: str,
        amount: Decimal,
        reason: str,
        key: str,
        expires_at: datetime | None,
        now: datetime,
    ) -> GrantResult:
        with trace_operation("credit_grant", feature_key=feature_key, agency_id=scope.agency_id):
            existing = await self.find_entry(key)
            if existing is not None:
                return self._grant_replay(existing, scope, feature_key, amount)

            row = await self.lock_balance(scope, feature_key)

            existing = await self.find_entry(key)
            if existing is not None:
                try:
                    return self._grant_replay(existing, scope, feature_key, amount)
                finally:
                    await self.session.rollback()

            had_balance = readable_balance(row, now) > 0
            await self.expire_if_due(row, now)
            previous_expiry = row.expires_at

            self.append_entry(row, LedgerEntryType.GRANT, amount, reason, key, now)
            if expires_at is None:
                row.expires_at = None
            elif previous_expiry is not None:
                row.expires_at = max(previous_expiry, expires_at)
            elif not had_balance:
                row.expires_at = expires_at

            balance_after = row.balance
            try:
                await self.verify_balance(row, balance_after)
                await self.session.commit()
            except IntegrityError:
                winner = await self._concurrent_winner(key)
                return self._grant_replay(winner, scope, feature_key, amount)

        self.events.emit(
            MeteringEvent.CREDITS_GRANTED,
            agency_id=scope.agency_id,
            sub_account_id=scope.sub_account_id,
            feature_key=feature_key,
            amount=amount,
            balance_after=balance_after,
            idempotency_key=key,
        )
        return GrantResult(balance_after=balance_after)

    async def _consume_once(
        self,
        scope: TenantScope,
        feature_key: str,
        amount: Decimal,
        reason: str,
        key: str,
        now: datetime,
    ) -> CreditConsumeResult:
        with trace_operation("credit_consume", feature_key=feature_key, agency_id=scope.agency_id):
            existing = await self.find_entry(key)
            if existing is not None:
                return self._consume_replay(existing, scope, feature_key, amount)

            row = await self.lock_balance(scope, feature_key)

            existing = await self.find_entry(key)
            if existing is not None:
                try:
                    return self._consume_replay(existing, scope, feature_key, amount)
                finally:
                    await self.session.rollback()

            available = readable_balance(row, now)
            if available < amount:
                await self.session.rollback()
                logger.info(
                    "credit_consume_insufficient",
                    feature_key=feature_key,
                    available=str(available),
                    requested=str(amount),
                )
                return CreditConsumeResult(success=False, balance_after=available)

            self.append_entry(row, LedgerEntryType.CONSUME, -amount, reason, key, now)
            balance_after = row.balance
            try:
                await self.verify_balance(row, balance_after)
                await self.session.commit()
            except IntegrityError:
                winner = await self._concurrent_winner(key)
                return self._consume_replay(winner, scope, feature_key, amount)

        self.events.emit(
            MeteringEvent.CREDITS_CONSUMED,
            agency_id=scope.agency_id,
            sub_account_id=scope.sub_account_id,
            feature_key=feature_key,
            amount=amount,
            balance_after=balance_after,
            idempotency_key=key,
        )
        return CreditConsumeResult(success=True, balance_after=balance_after)

    async def _expire_row_once(self, row_id: object, now: datetime) -> bool:
        stmt = (
            select(FeatureCreditBalance)
            .where(FeatureCreditBalance.id == row_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        row = (await self.session.execute(stmt)).scalar_one_or_none()
        if row is None or row.expires_at is None or row.expires_at > now or row.balance <= 0:
            await self.session.rollback()
            return False

        if await self.find_entry(expiry_idempotency_key(row)) is not None:
            await self.session.rollback()
            metrics.record_ledger_replay("credit_expire")
            return False

        await self.expire_if_due(row, now)
        try:
            await self.verify_balance(row, ZERO)
            await self.session.commit()
        except IntegrityError:
            await self.session.rollback()
            return False
        return True

    # ========================================================================
    # Replays
    # ========================================================================

    async def _concurrent_winner(self, key: str) -> CreditLedgerEntry:
        """
        After a unique violation: roll back and load the entry that took the key.

        Raises:
            ConcurrencyError: The violation was not on this key; the attempt is retried
        """
        await self.session.rollback()
        winner = await self.find_entry(key)
        if winner is None:
            raise ConcurrencyError(f"credit_ledger_entry:{key}")
        return winner

    def _check_replay(
        self,
        entry: CreditLedgerEntry,
        scope: TenantScope,
        feature_key: str,
        entry_type: LedgerEntryType,
        delta: Decimal,
    ) -> None:
        same = (
            entry.type == entry_type.value
            and entry.scope == scope.kind.value
            and entry.agency_id == scope.agency_id
            and entry.sub_account_id == scope.sub_account_key
            and entry.feature_key == feature_key
            and entry.delta == delta
        )
        if not same:
            raise IdempotencyConflictError(entry.idempotency_key, entry.id)
        metrics.record_ledger_replay(entry_type.value.lower())

    def _grant_replay(
        self, entry: CreditLedgerEntry, scope: TenantScope, feature_key: str, amount: Decimal
    ) -> GrantResult:
        self._check_replay(entry, scope, feature_key, LedgerEntryType.GRANT, amount)
        return GrantResult(balance_after=entry.balance_after, replayed=True)

    def _consume_replay(
        self, entry: CreditLedgerEntry, scope: TenantScope, feature_key: str, amount: Decimal
    ) -> CreditConsumeResult:
        self._check_replay(entry, scope, feature_key, LedgerEntryType.CONSUME, -amount)
        return CreditConsumeResult(success=True, balance_after=entry.balance_after, replayed=True)

    async def _select_balance_for_update(
        self, scope: TenantScope, feature_key: str
    ) -> FeatureCreditBalance | None:
        stmt = (
            select(FeatureCreditBalance)
            .where(*_scope_filter(scope, feature_key))
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    def _entry_to_domain(self, row: CreditLedgerEntry) -> LedgerEntryData:
        return LedgerEntryData(
            entry_id=row.id,
            scope=MeteringScope(row.scope),
            agency_id=row.agency_id,
            sub_account_id=row.sub_account_id or None,
            feature_key=row.feature_key,
            entry_type=LedgerEntryType(row.type),
            delta=row.delta,
            balance_after=row.balance_after,
            reason=row.reason,
            idempotency_key=row.idempotency_key,
            created_at=row.created_at,
        )
