# Append-only wallet ledger. Balances are always derived from the entries, nothing is cached.
import logging
from decimal import Decimal
from typing import List
from uuid import uuid4

from .booking_utils import parse_amount, require_text
from .error_utils import InsufficientFunds, ValidationError
from .models import EntryType, LedgerEntry

logger = logging.getLogger(__name__)

TOP_UP_REASON = "Wallet top-up"


def wallet_lock_key(account_id: str) -> str:
    return f"wallet:{account_id}"


class LedgerWriter:
    """
    Writes credit and debit entries and answers balance queries.

    Writes can join a caller's transaction (tx=...) so a booking and its money movements commit together.
    Without tx each write runs in its own transaction.
    """

    def __init__(self, db, clock):
        self._db = db
        self._clock = clock

    def _append(self, tx, account_id: str, entry_type: EntryType, amount: Decimal, reason: str,
                related_booking_id: str = None) -> LedgerEntry:
        if amount <= 0:
            raise ValidationError("Ledger amounts must be greater than zero")
        entry = LedgerEntry(
            id=str(uuid4()),
            account_id=account_id,
            type=entry_type,
            amount=amount,
            reason=reason,
            related_booking_id=related_booking_id,
            created_at=self._clock(),
        )
        tx.insert_ledger_entry(entry)
        logger.info(f"Ledger {entry_type.value} of {amount} on {account_id}: {reason} (booking {related_booking_id})")
        return entry

    def credit(self, account_id: str, amount: Decimal, reason: str, related_booking_id: str = None,
               tx=None) -> LedgerEntry:
        if tx is None:
            with self._db.transaction() as own_tx:
                return self._append(own_tx, account_id, EntryType.CREDIT, amount, reason, related_booking_id)
        return self._append(tx, account_id, EntryType.CREDIT, amount, reason, related_booking_id)

    def debit(self, account_id: str, amount: Decimal, reason: str, related_booking_id: str = None,
              tx=None, require_funds: bool = True) -> LedgerEntry:
        """
        Appends a debit. With require_funds the account is locked for the rest of the transaction and the debit is
        refused with InsufficientFunds if it would take the balance below zero.
        Reversals of earlier credits pass require_funds=False.
        """
        if tx is None:
            with self._db.transaction() as own_tx:
                return self.debit(account_id, amount, reason, related_booking_id, own_tx, require_funds)
        if require_funds:
            tx.lock(wallet_lock_key(account_id))
            balance = self._sum(tx.fetch_ledger_entries(account_id))
            if balance < amount:
                logger.info(f"Debit of {amount} refused for {account_id}, balance is {balance}")
                raise InsufficientFunds(f"Wallet balance {balance} is less than the required {amount}")
        return self._append(tx, account_id, EntryType.DEBIT, amount, reason, related_booking_id)

    def top_up(self, account_id, amount) -> LedgerEntry:
        account_id = require_text(account_id, "accountId")
        return self.credit(account_id, parse_amount(amount), TOP_UP_REASON)

    @staticmethod
    def _sum(entries) -> Decimal:
        return sum((entry.signed_amount for entry in entries), Decimal('0.00'))

    def list_transactions(self, account_id: str) -> List[LedgerEntry]:
        with self._db.transaction() as tx:
            return tx.fetch_ledger_entries(account_id)

    def balance(self, account_id: str) -> Decimal:
        return self._sum(self.list_transactions(account_id))

    def summary(self, account_id: str):
        entries = self.list_transactions(account_id)
        credits = sum((e.amount for e in entries if e.type == EntryType.CREDIT), Decimal('0.00'))
        debits = sum((e.amount for e in entries if e.type == EntryType.DEBIT), Decimal('0.00'))
        return {"balance": credits - debits, "totalCredits": credits, "totalDebits": debits}
