"""
Account Ledger Module

Account rows and append-only transaction rows, plus the repository that reads
and writes them. The stored balance is a materialized cache of the ledger:

    account.balance == sum(signed amount of completed transactions)

It is only ever changed by an atomic store-side increment issued in the same
unit as the transaction insert, never by reading, adding and writing back.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from .currency import Money, Currency
from .errors import NotFoundError, ValidationError
from .storage import StorageInterface, StorageRecord, format_timestamp, parse_timestamp


class AccountType(Enum):
    """Deposit products an owner can open (one of each)"""
    CHECKING = "checking"
    SAVINGS = "savings"


class AccountStatus(Enum):
    """Account lifecycle states"""
    ACTIVE = "active"        # Normal operation
    INACTIVE = "inactive"    # Not yet or no longer in use
    FROZEN = "frozen"        # Temporarily suspended
    CLOSED = "closed"        # Permanently closed


class TransactionKind(Enum):
    """Ledger entry kinds and the sign they apply to the balance"""
    DEPOSIT = "deposit"
    WITHDRAWAL = "withdrawal"

    @property
    def sign(self) -> int:
        return 1 if self is TransactionKind.DEPOSIT else -1


class TransactionStatus(Enum):
    """States of a ledger entry"""
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class Account(StorageRecord):
    """
    Bank account owned by one identity. The balance is stored in minor
    units so the store can add to it exactly.
    """
    owner_id: str
    account_number: str
    account_type: AccountType
    currency: Currency
    balance: Money
    status: AccountStatus = AccountStatus.ACTIVE

    def __post_init__(self):
        if self.balance.currency != self.currency:
            raise ValueError("Balance currency must match account currency")

    def can_transact(self) -> bool:
        """Check if account can process transactions"""
        return self.status == AccountStatus.ACTIVE

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'created_at': format_timestamp(self.created_at),
            'updated_at': format_timestamp(self.updated_at),
            'owner_id': self.owner_id,
            'account_number': self.account_number,
            'account_type': self.account_type.value,
            'currency': self.currency.code,
            'balance_minor': self.balance.to_minor_units(),
            'status': self.status.value
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Account':
        currency = Currency[data['currency']]
        return cls(
            id=data['id'],
            created_at=parse_timestamp(data['created_at']),
            updated_at=parse_timestamp(data['updated_at']),
            owner_id=data['owner_id'],
            account_number=data['account_number'],
            account_type=AccountType(data['account_type']),
            currency=currency,
            balance=Money.from_minor_units(data['balance_minor'], currency),
            status=AccountStatus(data['status'])
        )


@dataclass
class Transaction(StorageRecord):
    """Immutable ledger entry"""
    account_id: str
    kind: TransactionKind
    amount: Money
    description: str
    status: TransactionStatus
    processed_at: Optional[datetime] = None

    def __post_init__(self):
        # Validate amount is positive; direction comes from kind
        if not self.amount.is_positive():
            raise ValidationError("Transaction amount must be positive")

    @property
    def currency(self) -> Currency:
        return self.amount.currency

    @property
    def signed_amount(self) -> Money:
        return self.amount if self.kind.sign > 0 else -self.amount

    @property
    def is_completed(self) -> bool:
        return self.status == TransactionStatus.COMPLETED

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'created_at': format_timestamp(self.created_at),
            'updated_at': format_timestamp(self.updated_at),
            'account_id': self.account_id,
            'kind': self.kind.value,
            'amount_minor': self.amount.to_minor_units(),
            'currency': self.amount.currency.code,
            'description': self.description,
            'status': self.status.value,
            'processed_at': format_timestamp(self.processed_at) if self.processed_at else None
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Transaction':
        currency = Currency[data['currency']]
        return cls(
            id=data['id'],
            created_at=parse_timestamp(data['created_at']),
            updated_at=parse_timestamp(data['updated_at']),
            account_id=data['account_id'],
            kind=TransactionKind(data['kind']),
            amount=Money.from_minor_units(data['amount_minor'], currency),
            description=data['description'],
            status=TransactionStatus(data['status']),
            processed_at=parse_timestamp(data.get('processed_at'))
        )


class AccountLedger:
    """Repository for accounts and their ledger entries"""

    def __init__(self, storage: StorageInterface):
        self.storage = storage
        self.accounts_table = "accounts"
        self.transactions_table = "transactions"

        self.storage.create_index(self.accounts_table, ["account_number"], unique=True)
        self.storage.create_index(self.accounts_table, ["owner_id", "account_type"], unique=True)
        self.storage.create_index(self.transactions_table, ["account_id", "created_at"])

    # Accounts

    def get_account(self, account_id: str) -> Optional[Account]:
        """Get account by ID"""
        data = self.storage.load(self.accounts_table, account_id)
        if data:
            return Account.from_dict(data)
        return None

    def get_owned_account(self, account_id: str, owner_id: str) -> Account:
        """
        Get an account that belongs to owner_id.

        Raises:
            NotFoundError: If the account is missing or owned by someone else
        """
        account = self.get_account(account_id)
        if account is None or account.owner_id != owner_id:
            raise NotFoundError("Account not found", entity_id=account_id)
        return account

    def get_account_by_number(self, account_number: str) -> Optional[Account]:
        """Get account by account number"""
        records = self.storage.find(self.accounts_table, {"account_number": account_number}, limit=1)
        if records:
            return Account.from_dict(records[0])
        return None

    def find_account(self, owner_id: str, account_type: AccountType) -> Optional[Account]:
        """The owner's account of the given type, if any"""
        records = self.storage.find(
            self.accounts_table,
            {"owner_id": owner_id, "account_type": account_type},
            limit=1
        )
        if records:
            return Account.from_dict(records[0])
        return None

    def account_number_exists(self, account_number: str) -> bool:
        return self.storage.count(self.accounts_table, {"account_number": account_number}) > 0

    def list_accounts(self, owner_id: str) -> List[Account]:
        """All accounts of an owner, oldest first"""
        records = self.storage.find(self.accounts_table, {"owner_id": owner_id}, order_by="created_at")
        return [Account.from_dict(record) for record in records]

    def insert_account(self, account: Account) -> None:
        self.storage.insert(self.accounts_table, account.id, account.to_dict())

    def increment_balance(self, account_id: str, amount: Money) -> None:
        """
        Add amount to the stored balance with one store-side update.

        Raises:
            NotFoundError: If the account row does not exist
        """
        if not self.storage.increment(
            self.accounts_table, account_id, "balance_minor", amount.to_minor_units()
        ):
            raise NotFoundError("Account not found", entity_id=account_id)

    def set_status(self, account_id: str, status: AccountStatus) -> None:
        """
        Move an account to another lifecycle state. Only the status field is
        written, so the balance is never rewritten from a stale read.

        Raises:
            NotFoundError: If the account row does not exist
        """
        if not self.storage.update(self.accounts_table, account_id, {"status": status}):
            raise NotFoundError("Account not found", entity_id=account_id)

    # Transactions

    def append_transaction(self, transaction: Transaction) -> None:
        """Insert a ledger entry; existing entries are never overwritten"""
        self.storage.insert(self.transactions_table, transaction.id, transaction.to_dict())

    def transactions_for(self, account_id: str) -> List[Transaction]:
        """Entries of one account, newest first (insertion order breaks ties)"""
        records = self.storage.find(
            self.transactions_table,
            {"account_id": account_id},
            order_by="created_at",
            descending=True
        )
        return [Transaction.from_dict(record) for record in records]

    def reconcile(self, account_id: str) -> Tuple[Money, Money]:
        """
        Return (stored balance, balance derived from the ledger).

        Both are read inside one unit so a concurrent funding cannot
        land between the two reads.
        """
        with self.storage.atomic():
            account = self.get_account(account_id)
            if account is None:
                raise NotFoundError("Account not found", entity_id=account_id)
            derived = Money.zero(account.currency)
            for transaction in self.transactions_for(account_id):
                if transaction.is_completed:
                    derived = derived + transaction.signed_amount
        return account.balance, derived
