"""Day-end cash drawer reconciliation for PawnSys.

A date is open until it is closed with a physical cash count. Closing an
already closed date replaces its record; reopening deletes it.
"""
import logging

import pandas as pd

from pawnsys.config import STORAGE_KEYS, DEFAULT_OPENING_BALANCE, DATE_FORMAT_STORAGE
from pawnsys import calculations as calc
from pawnsys.data_structures import DayEndRecord, Pledge
from pawnsys.exceptions import NotFoundError, ValidationError
from pawnsys.services import audit_log

logger = logging.getLogger(__name__)

TRANSACTION_COLUMNS = ['timestamp', 'type', 'direction', 'pledge_id', 'amount', 'items', 'weight']


class DayEndService:
    """Computes daily cash movements and stores day-end records."""

    def __init__(self, storage, audit_logger=None):
        self.storage = storage
        self.audit = audit_logger

    def _day_key(self, day):
        return calc.to_day(day).strftime(DATE_FORMAT_STORAGE)

    def _pledges(self):
        return [Pledge.from_dict(p) for p in self.storage.get(STORAGE_KEYS['pledges'], [])]

    def _records(self):
        return self.storage.get(STORAGE_KEYS['day_end_records'], [])

    def get_transactions_df(self, day):
        """The day's disbursements and collections, oldest first."""
        rows = calc.day_transactions(self._pledges(), day)
        return pd.DataFrame(rows, columns=TRANSACTION_COLUMNS)

    def get_daily_stats(self, day):
        return calc.summarize_day(self._pledges(), day)

    def get_record(self, day):
        key = self._day_key(day)
        for r in self._records():
            if r['date'] == key:
                return DayEndRecord.from_dict(r)
        return None

    def is_closed(self, day):
        return self.get_record(day) is not None

    def list_records(self):
        """All closed days, most recent first."""
        records = [DayEndRecord.from_dict(r) for r in self._records()]
        return sorted(records, key=lambda r: r.date, reverse=True)

    def get_opening_balance(self, day):
        """Closing count of the latest earlier closed day, else the default float."""
        key = self._day_key(day)
        earlier = [r for r in self._records() if r['date'] < key]
        if not earlier:
            return DEFAULT_OPENING_BALANCE
        latest = max(earlier, key=lambda r: r['date'])
        return latest['closing_balance_actual']

    def preview(self, day, opening_balance=None, closing_balance=None):
        """Unsaved DayEndRecord for the current state of the day."""
        stats = self.get_daily_stats(day)
        if opening_balance is None:
            opening_balance = self.get_opening_balance(day)
        opening = calc.to_number(opening_balance, "opening_balance")
        expected, variance = calc.reconcile(opening, stats.cash_in, stats.cash_out, closing_balance)
        actual = None
        if closing_balance is not None and closing_balance != "":
            actual = calc.round_currency(calc.to_number(closing_balance, "closing_balance_actual"))

        return DayEndRecord(
            date=stats.date,
            opening_balance=calc.round_currency(opening),
            closing_balance_actual=actual,
            expected_closing=expected,
            variance=variance,
            cash_in=stats.cash_in,
            cash_out=stats.cash_out,
            new_pledges_count=stats.new_pledges_count,
            new_pledges_amount=stats.new_pledges_amount,
            renewals_count=stats.renewals_count,
            renewal_interest=stats.renewal_interest,
            redemptions_count=stats.redemptions_count,
            redemption_amount=stats.redemption_amount,
            total_items_added=stats.total_items_added,
            total_weight=stats.total_weight,
        )

    def close_day(self, day, closing_balance, opening_balance=None, notes="", user="System", now=None):
        """Persist the day-end record, replacing any earlier close of that date.

        Raises:
            ValidationError: No closing balance entered.
        """
        if closing_balance is None or closing_balance == "":
            raise ValidationError("Please enter closing balance", field="closing_balance_actual")
        now = calc.resolve_now(now)

        record = self.preview(day, opening_balance, closing_balance)
        record.notes = notes or ""
        record.closed_at = now
        record.closed_by = user

        records = [r for r in self._records() if r['date'] != record.date]
        records.append(record.to_dict())

        with self.storage.transaction():
            self.storage.set(STORAGE_KEYS['day_end_records'], records)
            if self.audit:
                self.audit.log(audit_log.DAY_CLOSE, "reports", f"Closed day {record.date}",
                               {'date': record.date, 'expected': record.expected_closing,
                                'actual': record.closing_balance_actual, 'variance': record.variance},
                               user=user, now=now)

        if record.variance != 0:
            logger.warning(f"Day {record.date} closed with variance {record.variance:+.2f}")
        else:
            logger.info(f"Day {record.date} closed balanced at {record.closing_balance_actual:.2f}")
        return record

    def reopen_day(self, day, user="System", now=None):
        """Delete the day's record so it can be edited and closed again.

        Returns:
            The discarded DayEndRecord.

        Raises:
            NotFoundError: The day was not closed.
        """
        now = calc.resolve_now(now)
        key = self._day_key(day)
        records = self._records()
        remaining = [r for r in records if r['date'] != key]
        if len(remaining) == len(records):
            raise NotFoundError(f"Day {key} is not closed", {'date': key})
        discarded = DayEndRecord.from_dict(next(r for r in records if r['date'] == key))

        with self.storage.transaction():
            self.storage.set(STORAGE_KEYS['day_end_records'], remaining)
            if self.audit:
                self.audit.log(audit_log.DAY_REOPEN, "reports", f"Reopened day {key}",
                               {'date': key, 'discarded': discarded.to_dict()}, user=user, now=now)

        logger.info(f"Day {key} reopened")
        return discarded
