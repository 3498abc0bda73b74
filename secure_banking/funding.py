"""
Funding Coordinator Module

Opens accounts and funds them. A funding event writes two coupled records,
the ledger entry and the balance increment, inside one atomic unit and
returns the balance read back inside that same unit.
"""

import secrets
import string
import uuid
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Union

from .config import SecureBankConfig, get_config
from .currency import Currency, Money, parse_amount, to_money
from .errors import (
    ConflictError, DuplicateRecordError, InvalidStateError, StorageError, ValidationError
)
from .ledger import (
    Account, AccountLedger, AccountStatus, AccountType,
    Transaction, TransactionKind, TransactionStatus
)
from .logging_config import get_logger, log_action
from .storage import StorageInterface, as_utc, utc_now


class FundingSourceType(Enum):
    """Where deposited money comes from"""
    CARD = "card"
    BANK = "bank"


@dataclass(frozen=True)
class FundingSource:
    """
    External source of a deposit. Number formats are checked by the
    caller's validators; only presence is checked here.
    """
    source_type: FundingSourceType
    account_number: str
    routing_number: Optional[str] = None

    def __post_init__(self):
        if not isinstance(self.source_type, FundingSourceType):
            try:
                object.__setattr__(self, 'source_type', FundingSourceType(self.source_type))
            except ValueError:
                raise ValidationError(f"Unsupported funding source type: {self.source_type!r}")
        if not self.account_number:
            raise ValidationError("Funding source account number is required")

    @property
    def description(self) -> str:
        return f"Funding from {self.source_type.value}"

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'FundingSource':
        return cls(
            source_type=data.get('type') or data.get('source_type'),
            account_number=data.get('account_number') or data.get('accountNumber'),
            routing_number=data.get('routing_number') or data.get('routingNumber')
        )


@dataclass(frozen=True)
class FundingResult:
    """The committed ledger entry and the balance read in the same unit"""
    transaction: Transaction
    new_balance: Money


def generate_account_number(length: int = 10) -> str:
    """Numeric account number with a non-zero leading digit, from secrets"""
    if length <= 0:
        raise ValueError("length must be greater than 0")
    first = secrets.choice("123456789")
    return first + "".join(secrets.choice(string.digits) for _ in range(length - 1))


class FundingCoordinator:
    """
    Creates accounts and applies deposits against an injected store.
    """

    def __init__(
        self,
        storage: StorageInterface,
        ledger: Optional[AccountLedger] = None,
        config: Optional[SecureBankConfig] = None,
        clock: Optional[Callable[[], datetime]] = None,
        number_generator: Optional[Callable[[int], str]] = None
    ):
        self.storage = storage
        self.ledger = ledger or AccountLedger(storage)
        self.config = config or get_config()
        self._clock = clock or utc_now
        self._generate_number = number_generator or generate_account_number
        self.logger = get_logger("secure_banking.funding")

    @property
    def max_transaction_amount(self) -> Decimal:
        return parse_amount(self.config.max_transaction_amount)

    def create_account(
        self,
        owner_id: str,
        account_type: Union[AccountType, str],
        currency: Union[Currency, str, None] = None
    ) -> Account:
        """
        Open an account of account_type for owner_id.

        Raises:
            ConflictError: If the owner already has an account of this type,
                or no free account number was found
            StorageError: If the account cannot be read back after insert
        """
        if not owner_id:
            raise ValidationError("owner_id is required")
        account_type = self._coerce_account_type(account_type)
        currency = self._coerce_currency(currency)

        with self.storage.atomic():
            if self.ledger.find_account(owner_id, account_type):
                raise ConflictError(
                    f"You already have a {account_type.value} account", entity_id=owner_id
                )

            now = as_utc(self._clock())
            account = Account(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                owner_id=owner_id,
                account_number=self._unique_account_number(),
                account_type=account_type,
                currency=currency,
                balance=Money.zero(currency),
                status=AccountStatus.ACTIVE
            )
            try:
                self.ledger.insert_account(account)
            except DuplicateRecordError as e:
                raise ConflictError(
                    f"Account for owner {owner_id} conflicts with an existing account",
                    entity_id=owner_id
                ) from e

            created = self.ledger.get_account(account.id)
            if created is None:
                raise StorageError("Failed to create account", entity_id=account.id)

        log_action(
            self.logger, "info",
            f"Opened {account_type.value} account {created.id}",
            owner_id=owner_id,
            action="account_created",
            resource=created.id,
            extra={"account_type": account_type.value, "currency": currency.code}
        )
        return created

    def get_accounts(self, owner_id: str) -> List[Account]:
        """All accounts of an owner"""
        return self.ledger.list_accounts(owner_id)

    def get_account(self, account_id: str, caller_owner_id: str) -> Account:
        """One account, only if it belongs to the caller"""
        return self.ledger.get_owned_account(account_id, caller_owner_id)

    def fund(
        self,
        account_id: str,
        amount: Union[Money, Decimal, int, str],
        source: Union[FundingSource, Dict[str, Any]],
        caller_owner_id: str
    ) -> FundingResult:
        """
        Deposit amount into the caller's account.

        One atomic unit inserts a completed deposit entry, adds amount to the
        balance store-side and reads the account back. If any step fails
        nothing of the unit is visible.

        Raises:
            ValidationError: If amount is not positive, is above
                max_transaction_amount or source is malformed
            NotFoundError: If the account is missing or not the caller's
            InvalidStateError: If the account is not active
            StorageError: If the unit could not be completed, including a
                balance that would leave the store's integer range
        """
        if isinstance(source, dict):
            source = FundingSource.from_dict(source)
        if parse_amount(amount) <= 0:
            raise ValidationError("Amount must be positive")

        with self.storage.atomic():
            account = self.ledger.get_owned_account(account_id, caller_owner_id)
            if not account.can_transact():
                raise InvalidStateError("Account is not active", entity_id=account.id)

            money = to_money(amount, account.currency)
            if not money.is_positive():
                raise ValidationError(
                    f"Amount rounds to zero in {account.currency.code}"
                )
            if money.amount > self.max_transaction_amount:
                raise ValidationError(
                    f"Amount exceeds the maximum of {self.max_transaction_amount} per transaction"
                )

            now = as_utc(self._clock())
            transaction = Transaction(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                account_id=account.id,
                kind=TransactionKind.DEPOSIT,
                amount=money,
                description=source.description,
                status=TransactionStatus.COMPLETED,
                processed_at=now
            )
            self.ledger.append_transaction(transaction)
            self.ledger.increment_balance(account.id, money)

            updated = self.ledger.get_account(account.id)
            if updated is None:
                raise StorageError("Account vanished during funding", entity_id=account.id)

        log_action(
            self.logger, "info",
            f"Funded account {account.id} with {money.to_string()}",
            owner_id=caller_owner_id,
            action="account_funded",
            resource=account.id,
            extra={"transaction_id": transaction.id, "source": source.source_type.value}
        )
        return FundingResult(transaction=transaction, new_balance=updated.balance)

    def get_transactions(self, account_id: str, caller_owner_id: str) -> List[Transaction]:
        """
        Ledger entries of the caller's account, newest first.

        The account filter is part of the store query, applied before
        ordering, so no other account's row can appear.
        """
        account = self.ledger.get_owned_account(account_id, caller_owner_id)
        return self.ledger.transactions_for(account.id)

    def _unique_account_number(self) -> str:
        length = self.config.account_number_length
        for _ in range(self.config.account_number_max_attempts):
            candidate = self._generate_number(length)
            if not self.ledger.account_number_exists(candidate):
                return candidate
        raise ConflictError("Could not allocate a unique account number")

    @staticmethod
    def _coerce_account_type(account_type: Union[AccountType, str]) -> AccountType:
        if isinstance(account_type, AccountType):
            return account_type
        try:
            return AccountType(account_type)
        except ValueError:
            raise ValidationError(f"Unsupported account type: {account_type!r}")

    def _coerce_currency(self, currency: Union[Currency, str, None]) -> Currency:
        if isinstance(currency, Currency):
            return currency
        return Currency.from_code(currency or self.config.default_currency)
