from collections import namedtuple
from decimal import Context, Decimal, localcontext


class TransactionType:
    DEPOSIT = "deposit"
    WITHDRAWAL = "withdrawal"
    DISPUTE = "dispute"
    RESOLVE = "resolve"
    CHARGEBACK = "chargeback"
    ALL_TYPES = frozenset({DEPOSIT, WITHDRAWAL, DISPUTE, RESOLVE, CHARGEBACK})
    FUNDS_MOVEMENT_TYPES = frozenset({DEPOSIT, WITHDRAWAL})


TransactionRecord = namedtuple("TransactionRecord", ["tx_type", "client_id", "tx_id", "amount"], defaults=(None,))

AccountTotals = namedtuple("AccountTotals", ["client_id", "available", "held", "total", "locked"])

# sums of 4-place amounts stay exact at this precision
LEDGER_CONTEXT = Context(prec=50)


class LedgerError(Exception):
    reason = "transaction rejected"

    def __init__(self, record, reason=None):
        self.record = record
        self.tx_id = record.tx_id
        self.client_id = record.client_id
        if reason is not None:
            self.reason = reason
        super().__init__(self.reason)


class MissingAmount(LedgerError):
    reason = "missing amount"


class InvalidAmount(LedgerError):
    reason = "negative amount"


class AccountFrozen(LedgerError):
    reason = "account is locked"


class UnknownAccount(LedgerError):
    reason = "account not found"


class InsufficientFunds(LedgerError):
    reason = "nsf"


class DuplicateTransactionId(LedgerError):
    reason = "duplicates existing tx_id"


class UnknownTransaction(LedgerError):
    reason = "tx not found"


class NotDisputed(LedgerError):
    reason = "tx is not disputed"


class AlreadyDisputed(LedgerError):
    reason = "tx is already disputed"


class AlreadyChargedBack(LedgerError):
    reason = "tx is charged back"


class ClientMismatch(LedgerError):
    reason = "tx client_id mismatch"


class UnknownTransactionType(LedgerError):
    reason = "invalid record_type"


class Account:
    """Balances for a single client. Only the Ledger mutates these."""

    __slots__ = ("id", "available", "held", "total", "frozen")

    def __init__(self, client_id):
        self.id = client_id
        self.available = Decimal(0)
        self.held = Decimal(0)
        self.total = Decimal(0)
        self.frozen = False

    def snapshot(self):
        return AccountTotals(self.id, self.available, self.held, self.total, self.frozen)


class Ledger:
    """Applies transaction records, in order, to per-client accounts.

    Every handler finishes all of its checks before touching any state, so a
    record that raises a LedgerError leaves the ledger exactly as it was.

    Dispute, resolve and chargeback records act on the account that owns the
    referenced deposit or withdrawal. A record naming a different client is
    rejected with ClientMismatch rather than redirected.
    """

    def __init__(self):
        self._accounts = {}
        self._tx_history = {}
        self._disputed = set()
        self._charged_back = set()
        self._handlers = {
            TransactionType.DEPOSIT: self._deposit,
            TransactionType.WITHDRAWAL: self._withdrawal,
            TransactionType.DISPUTE: self._dispute,
            TransactionType.RESOLVE: self._resolve,
            TransactionType.CHARGEBACK: self._chargeback,
        }

    def apply(self, record):
        handler = self._handlers.get(record.tx_type)
        if handler is None:
            raise UnknownTransactionType(record)
        with localcontext(LEDGER_CONTEXT):
            handler(record)

    def get_account(self, client_id):
        account = self._accounts.get(client_id)
        if account is None:
            return None
        return account.snapshot()

    def accounts(self):
        for account in self._accounts.values():
            yield account.snapshot()

    def get_tx(self, tx_id):
        return self._tx_history.get(tx_id)

    def is_disputed(self, tx_id):
        return tx_id in self._disputed

    def is_charged_back(self, tx_id):
        return tx_id in self._charged_back

    def _deposit(self, record):
        amount = self._expect_amount(record)
        account = self._accounts.get(record.client_id)
        if account is not None and account.frozen:
            raise AccountFrozen(record)
        self._expect_new_tx_id(record)

        # accounts only come into existence once a deposit actually lands
        if account is None:
            account = self._accounts[record.client_id] = Account(record.client_id)
        account.available += amount
        account.total += amount
        self._tx_history[record.tx_id] = record

    def _withdrawal(self, record):
        amount = self._expect_amount(record)
        account = self._expect_account(record)
        if account.frozen:
            raise AccountFrozen(record)
        if account.available < amount:
            raise InsufficientFunds(record)
        self._expect_new_tx_id(record)

        account.available -= amount
        account.total -= amount
        self._tx_history[record.tx_id] = record

    def _dispute(self, record):
        disputed_tx = self._expect_tx(record)
        amount = self._expect_amount(disputed_tx)
        if record.tx_id in self._disputed:
            raise AlreadyDisputed(record)
        if record.tx_id in self._charged_back:
            raise AlreadyChargedBack(record)
        account = self._expect_account(record)

        self._disputed.add(record.tx_id)
        account.available -= amount
        account.held += amount

    def _resolve(self, record):
        disputed_tx = self._expect_disputed_tx(record)
        account = self._expect_account(record)

        self._disputed.discard(record.tx_id)
        account.held -= disputed_tx.amount
        account.available += disputed_tx.amount

    def _chargeback(self, record):
        disputed_tx = self._expect_disputed_tx(record)
        account = self._expect_account(record)

        self._disputed.discard(record.tx_id)
        self._charged_back.add(record.tx_id)
        account.frozen = True
        account.held -= disputed_tx.amount
        account.total -= disputed_tx.amount

    def _expect_amount(self, record):
        if record.amount is None:
            raise MissingAmount(record)
        if record.amount < 0:
            raise InvalidAmount(record)
        return record.amount

    def _expect_account(self, record):
        account = self._accounts.get(record.client_id)
        if account is None:
            raise UnknownAccount(record)
        return account

    def _expect_new_tx_id(self, record):
        if record.tx_id in self._tx_history:
            raise DuplicateTransactionId(record)

    def _expect_tx(self, record):
        existing_tx = self._tx_history.get(record.tx_id)
        if existing_tx is None:
            raise UnknownTransaction(record)
        if existing_tx.client_id != record.client_id:
            raise ClientMismatch(record)
        return existing_tx

    def _expect_disputed_tx(self, record):
        existing_tx = self._expect_tx(record)
        if record.tx_id not in self._disputed:
            if record.tx_id in self._charged_back:
                raise AlreadyChargedBack(record)
            raise NotDisputed(record)
        return existing_tx
