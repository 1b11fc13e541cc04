"""
Ledger service: transfers between a store account and a company account.

Flow of a transfer:
1. Validate input (amount, account pair) before any read
2. Read both accounts with their versions
3. Infer direction from which side is the store account
4. Check funds
5. Commit debit + credit + log record atomically, guarded by the versions
6. On a version conflict, retry the whole flow with fresh reads (bounded)
"""
import uuid
from decimal import Decimal, InvalidOperation
from typing import List, Optional, Union

import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from storeledger.config import Settings, get_settings
from storeledger.core.exceptions import (
    ConcurrencyConflictError,
    InsufficientFundsError,
    InvalidAccountPairError,
    InvalidAmountError,
    NotFoundError,
    StoreLedgerError,
)
from storeledger.domain import (
    Account,
    AccountKind,
    BalanceWrite,
    TransactionRecord,
    TransferDirection,
    quantize_money,
)
from storeledger.monitoring.logging import operation_context
from storeledger.monitoring.metrics import (
    concurrency_conflicts_total,
    ledger_transfer_amount,
    ledger_transfers_total,
)
from storeledger.stores.base import AccountStore, TransactionLog

logger = structlog.get_logger(__name__)

AmountLike = Union[Decimal, int, str]


def _log_retry(retry_state: RetryCallState) -> None:
    error = retry_state.outcome.exception() if retry_state.outcome else None
    logger.info(
        "transfer_retrying_after_conflict",
        attempt=retry_state.attempt_number,
        error=str(error),
    )


class LedgerService:
    """
    Moves money between one store account and one company account.

    Only this service mutates balances. Every successful transfer appends
    exactly one TransactionRecord; failed transfers leave no trace.
    """

    def __init__(
        self,
        accounts: AccountStore,
        transactions: TransactionLog,
        settings: Optional[Settings] = None,
    ):
        """
        Initialize ledger service.

        Args:
            accounts: Account store with conditional writes
            transactions: Read side of the transaction log
            settings: Optional settings (defaults to get_settings())
        """
        self.accounts = accounts
        self.transactions = transactions
        self.settings = settings or get_settings()

    def _validate_amount(self, amount: AmountLike) -> Decimal:
        """
        Normalize the amount to a Decimal with the ledger's precision.

        Raises:
            InvalidAmountError: If the amount is not a positive number
        """
        if isinstance(amount, float):
            amount = str(amount)
        try:
            value = Decimal(amount)
        except (InvalidOperation, TypeError, ValueError):
            raise InvalidAmountError(amount) from None  # type: ignore[arg-type]
        if not value.is_finite() or value <= 0:
            raise InvalidAmountError(value)
        value = quantize_money(value, self.settings.money_places)
        if value <= 0:
            raise InvalidAmountError(value)
        return value

    @staticmethod
    def _infer_direction(source: Account, target: Account) -> TransferDirection:
        """
        Derive direction from the account kinds.

        Raises:
            InvalidAccountPairError: Unless exactly one side is a store account
        """
        if source.kind == AccountKind.STORE and target.kind == AccountKind.COMPANY:
            return TransferDirection.STORE_TO_COMPANY
        if source.kind == AccountKind.COMPANY and target.kind == AccountKind.STORE:
            return TransferDirection.COMPANY_TO_STORE
        raise InvalidAccountPairError(
            f"Transfers must be between a store and a company account, "
            f"got {source.kind.value} -> {target.kind.value}",
            from_account_id=source.id,
            to_account_id=target.id,
        )

    async def _attempt_transfer(
        self, from_account_id: uuid.UUID, to_account_id: uuid.UUID, amount: Decimal
    ) -> TransactionRecord:
        source = await self.accounts.read(from_account_id)
        target = await self.accounts.read(to_account_id)

        direction = self._infer_direction(source.entity, target.entity)

        if source.entity.balance < amount:
            raise InsufficientFundsError(from_account_id, source.entity.balance, amount)

        if direction == TransferDirection.STORE_TO_COMPANY:
            store_account_id, company_account_id = from_account_id, to_account_id
        else:
            store_account_id, company_account_id = to_account_id, from_account_id

        record = TransactionRecord(
            store_account_id=store_account_id,
            company_account_id=company_account_id,
            amount=amount,
            direction=direction,
        )
        debit = BalanceWrite(
            account_id=from_account_id,
            expected_version=source.version,
            new_balance=source.entity.balance - amount,
        )
        credit = BalanceWrite(
            account_id=to_account_id,
            expected_version=target.version,
            new_balance=target.entity.balance + amount,
        )

        try:
            return await self.accounts.commit_transfer(debit, credit, record)
        except ConcurrencyConflictError as e:
            concurrency_conflicts_total.labels(entity="account").inc()
            logger.warning(
                "transfer_version_conflict",
                account_id=str(e.entity_id),
                expected_version=e.expected_version,
            )
            raise

    async def transfer(
        self,
        from_account_id: uuid.UUID,
        to_account_id: uuid.UUID,
        amount: AmountLike,
    ) -> uuid.UUID:
        """
        Transfer amount from one account to the other.

        Args:
            from_account_id: Account to debit
            to_account_id: Account to credit
            amount: Positive amount

        Returns:
            uuid.UUID: Id of the new transaction record

        Raises:
            InvalidAmountError: amount <= 0
            InvalidAccountPairError: same account, or not one store + one company account
            NotFoundError: either account does not exist
            InsufficientFundsError: source balance lower than amount
            ConcurrencyConflictError: conflict persisted through every retry
            PersistenceFailureError: storage failure; nothing was applied
        """
        value = self._validate_amount(amount)
        if from_account_id == to_account_id:
            raise InvalidAccountPairError(
                "Cannot transfer to the same account", account_id=from_account_id
            )

        retrying = AsyncRetrying(
            retry=retry_if_exception_type(ConcurrencyConflictError),
            stop=stop_after_attempt(self.settings.ledger_max_attempts),
            wait=wait_exponential(
                multiplier=self.settings.ledger_retry_base_delay,
                max=self.settings.ledger_retry_max_delay,
            ),
            before_sleep=_log_retry,
            reraise=True,
        )

        with operation_context(
            "transfer", from_account_id=from_account_id, to_account_id=to_account_id
        ):
            logger.info("transfer_started", amount=str(value))

            try:
                async for attempt in retrying:
                    with attempt:
                        record = await self._attempt_transfer(
                            from_account_id, to_account_id, value
                        )
            except StoreLedgerError as e:
                ledger_transfers_total.labels(outcome=e.error_code, direction="none").inc()
                logger.warning("transfer_failed", error_code=e.error_code, error=e.message)
                raise

            ledger_transfers_total.labels(
                outcome="committed", direction=record.direction.value
            ).inc()
            ledger_transfer_amount.observe(float(record.amount))
            logger.info(
                "transfer_committed",
                transaction_id=str(record.id),
                direction=record.direction.value,
            )
            return record.id

    async def get_account(self, account_id: uuid.UUID) -> Account:
        """Current state of an account."""
        return (await self.accounts.read(account_id)).entity

    async def get_store_account(self, store_id: uuid.UUID) -> Account:
        """
        Account owned by a store.

        Raises:
            NotFoundError: If the store has no account
        """
        found = await self.accounts.find_by_owner(store_id, AccountKind.STORE)
        if found is None:
            raise NotFoundError("store account", store_id)
        return found.entity

    async def get_transaction(self, transaction_id: uuid.UUID) -> TransactionRecord:
        return await self.transactions.get(transaction_id)

    async def transactions_for_account(self, account_id: uuid.UUID) -> List[TransactionRecord]:
        """
        Replay the log for one account, oldest first.

        Raises:
            NotFoundError: If the account does not exist
        """
        await self.accounts.read(account_id)
        return await self.transactions.list_for_account(account_id)
