"""
Test suite for account creation and funding

Validates the atomic funding unit: a completed deposit entry and the balance
increment are visible together or not at all, and the returned balance is the
one read inside the unit.
"""

import logging
import threading
from decimal import Decimal

import pytest

from secure_banking.config import SecureBankConfig
from secure_banking.currency import Currency, Money
from secure_banking.errors import (
    ConflictError, InvalidStateError, NotFoundError, StorageError, ValidationError
)
from secure_banking.funding import (
    FundingCoordinator, FundingSource, FundingSourceType, generate_account_number
)
from secure_banking.ledger import AccountStatus, AccountType, TransactionKind, TransactionStatus


CARD = {"type": "card", "account_number": "4111111111111111"}


def usd(amount):
    return Money(Decimal(amount), Currency.USD)


@pytest.fixture
def coordinator(storage, clock, log_handler):
    coordinator = FundingCoordinator(storage, config=SecureBankConfig(), clock=clock)
    previous_level = coordinator.logger.level
    coordinator.logger.setLevel(logging.DEBUG)
    coordinator.logger.addHandler(log_handler)
    yield coordinator
    coordinator.logger.removeHandler(log_handler)
    coordinator.logger.setLevel(previous_level)


@pytest.fixture
def checking(coordinator):
    return coordinator.create_account("owner-1", AccountType.CHECKING)


class TestAccountNumbers:
    """Test account number generation"""

    def test_format(self):
        for _ in range(50):
            number = generate_account_number()
            assert len(number) == 10
            assert number.isdigit()
            assert number[0] != "0"

    def test_custom_length(self):
        assert len(generate_account_number(16)) == 16

    def test_rejects_non_positive_length(self):
        with pytest.raises(ValueError):
            generate_account_number(0)


class TestFundingSource:
    """Test funding source parsing"""

    def test_from_dict(self):
        source = FundingSource.from_dict(
            {"type": "bank", "accountNumber": "000123", "routingNumber": "021000021"}
        )
        assert source.source_type == FundingSourceType.BANK
        assert source.account_number == "000123"
        assert source.routing_number == "021000021"
        assert source.description == "Funding from bank"

    def test_unknown_type(self):
        with pytest.raises(ValidationError):
            FundingSource("crypto", "123")

    def test_account_number_required(self):
        with pytest.raises(ValidationError):
            FundingSource.from_dict({"type": "card"})


class TestCreateAccount:
    """Opening accounts"""

    def test_create_checking(self, coordinator, log_handler):
        account = coordinator.create_account("owner-1", AccountType.CHECKING)

        assert account.owner_id == "owner-1"
        assert account.account_type == AccountType.CHECKING
        assert account.status == AccountStatus.ACTIVE
        assert account.balance == usd("0")
        assert len(account.account_number) == 10 and account.account_number.isdigit()
        assert [a.id for a in coordinator.get_accounts("owner-1")] == [account.id]
        assert "account_created" in log_handler.actions()

    def test_string_type_and_currency(self, coordinator):
        account = coordinator.create_account("owner-1", "savings", currency="eur")
        assert account.account_type == AccountType.SAVINGS
        assert account.currency == Currency.EUR

    def test_one_account_per_type(self, coordinator):
        coordinator.create_account("owner-1", AccountType.CHECKING)
        with pytest.raises(ConflictError, match="You already have a checking account"):
            coordinator.create_account("owner-1", AccountType.CHECKING)

        coordinator.create_account("owner-1", AccountType.SAVINGS)
        coordinator.create_account("owner-2", AccountType.CHECKING)
        assert len(coordinator.get_accounts("owner-1")) == 2

    @pytest.mark.parametrize("owner_id, account_type, currency", [
        ("", "checking", None),
        ("owner-1", "brokerage", None),
        ("owner-1", "checking", "XYZ"),
    ])
    def test_invalid_input(self, coordinator, storage, owner_id, account_type, currency):
        with pytest.raises(ValidationError):
            coordinator.create_account(owner_id, account_type, currency=currency)
        assert storage.count("accounts") == 0

    def test_retries_number_collision(self, storage, clock):
        numbers = iter(["1111111111", "1111111111", "2222222222"])
        coordinator = FundingCoordinator(
            storage, config=SecureBankConfig(), clock=clock,
            number_generator=lambda length: next(numbers)
        )
        first = coordinator.create_account("owner-1", AccountType.CHECKING)
        second = coordinator.create_account("owner-2", AccountType.CHECKING)

        assert first.account_number == "1111111111"
        assert second.account_number == "2222222222"

    def test_number_exhaustion(self, storage, clock):
        coordinator = FundingCoordinator(
            storage, config=SecureBankConfig(account_number_max_attempts=3), clock=clock,
            number_generator=lambda length: "1111111111"
        )
        coordinator.create_account("owner-1", AccountType.CHECKING)
        with pytest.raises(ConflictError):
            coordinator.create_account("owner-2", AccountType.CHECKING)
        assert storage.count("accounts") == 1

    def test_failed_read_back_leaves_nothing(self, coordinator, storage, monkeypatch):
        monkeypatch.setattr(coordinator.ledger, "get_account", lambda account_id: None)

        with pytest.raises(StorageError, match="Failed to create account"):
            coordinator.create_account("owner-1", AccountType.CHECKING)
        assert storage.count("accounts") == 0

    def test_get_account_checks_owner(self, coordinator, checking):
        assert coordinator.get_account(checking.id, "owner-1").id == checking.id
        with pytest.raises(NotFoundError):
            coordinator.get_account(checking.id, "owner-2")


class TestFund:
    """Depositing into an account"""

    def test_fund(self, coordinator, checking, clock, log_handler):
        result = coordinator.fund(checking.id, Decimal("50.00"), CARD, "owner-1")

        assert result.new_balance == usd("50.00")
        assert result.transaction.kind == TransactionKind.DEPOSIT
        assert result.transaction.status == TransactionStatus.COMPLETED
        assert result.transaction.amount == usd("50.00")
        assert result.transaction.description == "Funding from card"
        assert result.transaction.processed_at == clock()
        assert coordinator.get_account(checking.id, "owner-1").balance == usd("50.00")
        assert [t.id for t in coordinator.get_transactions(checking.id, "owner-1")] == [
            result.transaction.id
        ]
        assert "account_funded" in log_handler.actions()

    @pytest.mark.parametrize("amount", ["25.10", 25.1, Decimal("25.10"), usd("25.10")])
    def test_amount_forms(self, coordinator, checking, amount):
        result = coordinator.fund(checking.id, amount, CARD, "owner-1")
        assert result.new_balance == usd("25.10")

    def test_rounds_half_up_to_currency_precision(self, coordinator, checking):
        result = coordinator.fund(checking.id, "10.005", CARD, "owner-1")
        assert result.new_balance == usd("10.01")

    def test_bank_source_object(self, coordinator, checking):
        source = FundingSource(FundingSourceType.BANK, "000123", "021000021")
        result = coordinator.fund(checking.id, "1.00", source, "owner-1")
        assert result.transaction.description == "Funding from bank"

    @pytest.mark.parametrize("amount", [
        0, "-5", "abc", "0.001", "NaN", "Infinity", True, None,
        "1e30", "100000000000000000", "100000.01"
    ])
    def test_rejects_bad_amounts(self, coordinator, checking, storage, amount):
        with pytest.raises(ValidationError):
            coordinator.fund(checking.id, amount, CARD, "owner-1")
        assert storage.count("transactions") == 0
        assert coordinator.get_account(checking.id, "owner-1").balance.is_zero()

    def test_maximum_amount_is_inclusive(self, coordinator, checking):
        result = coordinator.fund(checking.id, "100000.00", CARD, "owner-1")
        assert result.new_balance == usd("100000.00")

    def test_configured_maximum(self, storage, clock):
        coordinator = FundingCoordinator(
            storage, config=SecureBankConfig(max_transaction_amount="10.00"), clock=clock
        )
        account = coordinator.create_account("owner-1", AccountType.CHECKING)

        with pytest.raises(ValidationError):
            coordinator.fund(account.id, "10.01", CARD, "owner-1")
        assert coordinator.fund(account.id, "10.00", CARD, "owner-1").new_balance == usd("10.00")

    def test_balance_beyond_storable_range(self, storage, clock):
        coordinator = FundingCoordinator(
            storage, config=SecureBankConfig(max_transaction_amount="1e20"), clock=clock
        )
        account = coordinator.create_account("owner-1", AccountType.CHECKING)

        first = coordinator.fund(account.id, "50000000000000000.01", CARD, "owner-1")
        with pytest.raises(StorageError):
            coordinator.fund(account.id, "50000000000000000.01", CARD, "owner-1")

        assert coordinator.get_account(account.id, "owner-1").balance == first.new_balance
        assert len(coordinator.get_transactions(account.id, "owner-1")) == 1
        stored, derived = coordinator.ledger.reconcile(account.id)
        assert stored == derived

    def test_amount_beyond_storable_range(self, storage, clock):
        coordinator = FundingCoordinator(
            storage, config=SecureBankConfig(max_transaction_amount="1e20"), clock=clock
        )
        account = coordinator.create_account("owner-1", AccountType.CHECKING)

        with pytest.raises(StorageError):
            coordinator.fund(account.id, "100000000000000000", CARD, "owner-1")
        assert storage.count("transactions") == 0
        assert coordinator.get_account(account.id, "owner-1").balance.is_zero()

    def test_rejects_bad_source(self, coordinator, checking):
        with pytest.raises(ValidationError):
            coordinator.fund(checking.id, "1.00", {"type": "crypto", "account_number": "1"}, "owner-1")

    def test_unknown_account(self, coordinator):
        with pytest.raises(NotFoundError):
            coordinator.fund("missing", "1.00", CARD, "owner-1")

    def test_someone_elses_account(self, coordinator, checking, storage):
        with pytest.raises(NotFoundError):
            coordinator.fund(checking.id, "1.00", CARD, "owner-2")
        assert storage.count("transactions") == 0

    def test_inactive_account(self, coordinator, checking, storage):
        coordinator.ledger.set_status(checking.id, AccountStatus.FROZEN)

        with pytest.raises(InvalidStateError):
            coordinator.fund(checking.id, "1.00", CARD, "owner-1")
        assert storage.count("transactions") == 0

    def test_currency_mismatch(self, coordinator, checking):
        with pytest.raises(ValidationError):
            coordinator.fund(checking.id, Money(Decimal("1"), Currency.EUR), CARD, "owner-1")

    def test_failure_inside_unit_leaves_nothing(self, coordinator, checking, storage, monkeypatch):
        def broken_increment(account_id, amount):
            raise StorageError("disk full")

        monkeypatch.setattr(coordinator.ledger, "increment_balance", broken_increment)

        with pytest.raises(StorageError):
            coordinator.fund(checking.id, "50.00", CARD, "owner-1")
        assert storage.count("transactions") == 0
        assert coordinator.get_account(checking.id, "owner-1").balance.is_zero()

    def test_concurrent_funding(self, coordinator, checking):
        errors = []

        def deposit():
            try:
                coordinator.fund(checking.id, "5.00", CARD, "owner-1")
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=deposit) for _ in range(10)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert errors == []
        assert coordinator.get_account(checking.id, "owner-1").balance == usd("50.00")
        stored, derived = coordinator.ledger.reconcile(checking.id)
        assert stored == derived

    def test_two_concurrent_deposits_of_fifty(self, coordinator, checking):
        results = []
        barrier = threading.Barrier(2)

        def deposit():
            barrier.wait()
            results.append(coordinator.fund(checking.id, "50", CARD, "owner-1"))

        threads = [threading.Thread(target=deposit) for _ in range(2)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        balances = sorted(r.new_balance.amount for r in results)
        assert balances == [Decimal("50.00"), Decimal("100.00")]

        history = coordinator.get_transactions(checking.id, "owner-1")
        assert len(history) == 2
        assert all(t.amount == usd("50.00") for t in history)
        # Equal timestamps: the later insert comes first
        by_balance = {r.new_balance.amount: r.transaction.id for r in results}
        assert [t.id for t in history] == [by_balance[Decimal("100.00")], by_balance[Decimal("50.00")]]


class TestGetTransactions:
    """Ledger history reads"""

    def test_history_is_per_account(self, coordinator, checking, clock):
        other = coordinator.create_account("owner-2", AccountType.CHECKING)
        coordinator.fund(checking.id, "1.00", CARD, "owner-1")
        clock.advance(seconds=1)
        coordinator.fund(other.id, "2.00", CARD, "owner-2")
        clock.advance(seconds=1)
        coordinator.fund(checking.id, "3.00", CARD, "owner-1")

        history = coordinator.get_transactions(checking.id, "owner-1")
        assert [t.amount for t in history] == [usd("3.00"), usd("1.00")]
        assert all(t.account_id == checking.id for t in history)

    def test_history_requires_ownership(self, coordinator, checking):
        with pytest.raises(NotFoundError):
            coordinator.get_transactions(checking.id, "owner-2")

    def test_empty_history(self, coordinator, checking):
        assert coordinator.get_transactions(checking.id, "owner-1") == []
