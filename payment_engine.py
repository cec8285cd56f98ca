import csv
import sys
from decimal import Decimal, ROUND_DOWN, InvalidOperation, localcontext

from ledger import LEDGER_CONTEXT, Ledger, LedgerError, TransactionRecord, TransactionType


class InputError(RuntimeError):
    pass


class MissingArgument(InputError):
    pass


class InputFileNotFound(InputError):
    pass


class InputFileUnreadable(InputError):
    pass


class RecordFormatError(ValueError):
    pass


class ErrorPolicy:
    # LENIENT reports a rejected record or bad row and moves on, STRICT stops the run on it.
    LENIENT = "lenient"
    STRICT = "strict"
    ALL_POLICIES = frozenset({LENIENT, STRICT})


class PaymentEngine:
    MAX_CLIENT_ID = 65535
    MAX_TX_ID = 4294967295
    AMOUNT_PRECISION = Decimal(".0001")
    DEFAULT_FIELD_ORDER = ("type", "client", "tx", "amount")
    REQUIRED_FIELDS = ("type", "client", "tx")
    OUTPUT_FIELDNAMES = ("client", "available", "held", "total", "locked")

    def __init__(self, filename, error_policy=ErrorPolicy.LENIENT, output=None):
        if error_policy not in ErrorPolicy.ALL_POLICIES:
            raise ValueError(f"unknown error policy: {error_policy!r}")
        self.filename = filename
        self.error_policy = error_policy
        self.output = output
        self.ledger = Ledger()
        self.set_field_order(self.DEFAULT_FIELD_ORDER)

    def set_field_order(self, fieldnames):
        positions = {name: idx for idx, name in enumerate(fieldnames)}
        self.type_field_idx = positions["type"]
        self.client_field_idx = positions["client"]
        self.tx_field_idx = positions["tx"]
        self.amount_field_idx = positions.get("amount")

    def discover_field_order(self, first_row):
        """Take the column order from a header row.

        Returns False, leaving the default order in place, when ``first_row``
        already looks like a transaction so the caller can process it as data.
        """
        fieldnames = [field.strip().lower() for field in first_row]
        if not fieldnames or fieldnames[0] in TransactionType.ALL_TYPES:
            return False

        missing = [name for name in self.REQUIRED_FIELDS if name not in fieldnames]
        if missing:
            raise InputFileUnreadable(f"header is missing required column(s): {', '.join(missing)}")

        self.set_field_order(fieldnames)
        return True

    def read_transaction_data(self):
        if not self.filename:
            raise MissingArgument("no filename to read has been set. aborting.")
        try:
            # undecodable bytes become U+FFFD so the damaged row fails parsing on its own
            with open(self.filename, newline="", encoding="utf-8-sig", errors="replace") as file:
                self.process_stream(file)
        except FileNotFoundError as e:
            raise InputFileNotFound(f"input file not found: {self.filename}") from e
        except OSError as e:
            raise InputFileUnreadable(f"could not read {self.filename}: {e}") from e

    def process_stream(self, stream):
        for record in self.read_records(stream):
            self.apply_record(record)

    def read_records(self, stream):
        csvreader = csv.reader(stream)
        header_seen = False
        while True:
            try:
                row = next(csvreader)
            except StopIteration:
                return
            except csv.Error as e:
                self.error_log(f"field format error: {e} on line {csvreader.line_num}")
                if self.error_policy == ErrorPolicy.STRICT:
                    raise RecordFormatError(str(e)) from e
                continue
            if not any(field.strip() for field in row):
                continue
            if not header_seen:
                header_seen = True
                if self.discover_field_order(row):
                    continue
            record = self.attempt_parse_record(row)
            if record is not None:
                yield record

    def process_record(self, row):
        record = self.attempt_parse_record(row)
        if record is None:
            return False
        return self.apply_record(record)

    def attempt_parse_record(self, row):
        try:
            return self.parse_record(row)
        except RecordFormatError as e:
            self.error_log(f"field format error: {e} while attempting to parse row like: {row!r}")
            if self.error_policy == ErrorPolicy.STRICT:
                raise
            return None

    def parse_record(self, row):
        fields = [field.strip() for field in row]
        try:
            tx_type = fields[self.type_field_idx].lower()
            client_id = int(fields[self.client_field_idx])
            tx_id = int(fields[self.tx_field_idx])
        except IndexError as e:
            raise RecordFormatError("too few fields") from e
        except ValueError as e:
            raise RecordFormatError(str(e)) from e

        if tx_type not in TransactionType.ALL_TYPES:
            raise RecordFormatError(f"invalid record_type {tx_type!r}")
        if not (0 <= client_id <= self.MAX_CLIENT_ID):
            raise RecordFormatError(f"invalid client_id {client_id}")
        if not (0 <= tx_id <= self.MAX_TX_ID):
            raise RecordFormatError(f"invalid tx_id {tx_id}")

        amount = None
        if tx_type in TransactionType.FUNDS_MOVEMENT_TYPES:
            amount = self.get_normalized_amount(fields)
        return TransactionRecord(tx_type, client_id, tx_id, amount)

    def get_normalized_amount(self, fields):
        # a blank or unparseable amount counts as no amount at all; the ledger decides what that means
        if self.amount_field_idx is None or self.amount_field_idx >= len(fields):
            return None
        raw_amount = fields[self.amount_field_idx].strip()
        if not raw_amount:
            return None
        try:
            amount = Decimal(raw_amount)
        except InvalidOperation:
            return None
        if not amount.is_finite():
            return None
        try:
            with localcontext(LEDGER_CONTEXT):
                return amount.quantize(self.AMOUNT_PRECISION, rounding=ROUND_DOWN)
        except InvalidOperation as e:
            raise RecordFormatError(f"amount {raw_amount} out of range") from e

    def apply_record(self, record):
        try:
            self.ledger.apply(record)
        except LedgerError as e:
            self.error_log(e.reason, record.tx_id, record.client_id, record.tx_type, record.amount)
            if self.error_policy == ErrorPolicy.STRICT:
                raise
            return False
        return True

    def error_log(self, message, tx_id=None, client_id=None, record_type=None, amount=None):
        if tx_id is not None and client_id is not None and record_type is not None:
            formatted_prefix = f"tx_id {tx_id}, client_id {client_id}, failed to apply {record_type}"
            amount_detail = ""
            if amount is not None:
                amount_detail = f" of ${amount}"
            print(f"{formatted_prefix}{amount_detail}: {message}", file=sys.stderr)
        else:
            print(f"transaction error: {message}", file=sys.stderr)

    def get_tx(self, tx_id):
        return self.ledger.get_tx(tx_id)

    def get_account_totals(self):
        self.read_transaction_data()
        return {account.client_id: account for account in self.ledger.accounts()}

    def format_amount(self, amount):
        with localcontext(LEDGER_CONTEXT):
            return str(amount.quantize(self.AMOUNT_PRECISION))

    def write_accounts(self, accounts, stream):
        csvwriter = csv.writer(stream, lineterminator="\n")
        csvwriter.writerow(self.OUTPUT_FIELDNAMES)
        for account in accounts:
            csvwriter.writerow([
                account.client_id,
                self.format_amount(account.available),
                self.format_amount(account.held),
                self.format_amount(account.total),
                str(account.locked).lower(),
            ])

    def generate_output(self):
        self.read_transaction_data()
        stream = self.output if self.output is not None else sys.stdout
        self.write_accounts(self.ledger.accounts(), stream)


def main(argv=None):
    if argv is None:
        argv = sys.argv[1:]
    try:
        if not argv:
            raise MissingArgument("expected 1 argument, but got none. usage: payment-engine <transactions.csv>")
        PaymentEngine(argv[0]).generate_output()
    except InputError as e:
        print(e, file=sys.stderr)
        return 1
    return 0


if __name__ == '__main__':
    sys.exit(main())
