"""
Report generation module for PawnSys.
Portfolio summaries for the dashboard and the overdue / auction lists.
"""
import pandas as pd

from pawnsys.config import STORAGE_KEYS
from pawnsys import calculations as calc
from pawnsys.data_structures import Pledge

PLEDGE_COLUMNS = [
    'id', 'customer_id', 'status', 'loan_amount', 'created_at', 'due_date',
    'elapsed_months', 'outstanding_interest', 'total_due', 'days_overdue', 'rack_location',
]


class ReportGenerator:
    def __init__(self, storage):
        self.storage = storage

    def _pledges(self):
        return [Pledge.from_dict(p) for p in self.storage.get(STORAGE_KEYS['pledges'], [])]

    def get_pledges_df(self, now=None):
        """One row per pledge with effective status and amounts owed as of ``now``.

        Interest columns are zero for pledges no longer held (redeemed,
        forfeited, auctioned).
        """
        now = calc.resolve_now(now)
        rules = calc.InterestRules.from_settings(self.storage.get(STORAGE_KEYS['settings'], {}))

        rows = []
        for p in self._pledges():
            status = calc.effective_status(p, now)
            row = {
                'id': p.id,
                'customer_id': p.customer_id,
                'status': status,
                'loan_amount': p.loan_amount,
                'created_at': p.created_at,
                'due_date': p.due_date,
                'elapsed_months': 0,
                'outstanding_interest': 0.0,
                'total_due': 0.0,
                'days_overdue': 0,
                'rack_location': p.rack_location,
            }
            if status in (calc.ACTIVE, calc.OVERDUE):
                interest = calc.calculate_interest(p.loan_amount, p.created_at, now, p.paid_interest, rules)
                row['elapsed_months'] = interest.elapsed_months
                row['outstanding_interest'] = interest.outstanding_interest
                row['total_due'] = interest.total_due
            if status == calc.OVERDUE:
                row['days_overdue'] = (now - p.due_date).days
            rows.append(row)
        return pd.DataFrame(rows, columns=PLEDGE_COLUMNS)

    def get_portfolio_summary(self, now=None):
        """Dashboard figures: counts per status and money still out on loan."""
        df = self.get_pledges_df(now)
        counts = {status: 0 for status in calc.STATUSES}
        if df.empty:
            return {
                'counts': counts, 'total_pledges': 0, 'outstanding_principal': 0.0,
                'outstanding_interest': 0.0, 'total_receivable': 0.0,
            }

        counts.update(df.groupby('status').size().to_dict())
        held = df[df['status'].isin([calc.ACTIVE, calc.OVERDUE])]
        return {
            'counts': {k: int(v) for k, v in counts.items()},
            'total_pledges': int(len(df)),
            'outstanding_principal': calc.round_currency(held['loan_amount'].sum()),
            'outstanding_interest': calc.round_currency(held['outstanding_interest'].sum()),
            'total_receivable': calc.round_currency(held['total_due'].sum()),
        }

    def get_overdue_pledges(self, now=None):
        """Overdue pledges, longest overdue first."""
        df = self.get_pledges_df(now)
        overdue = df[df['status'] == calc.OVERDUE]
        return overdue.sort_values(by=['days_overdue', 'id'], ascending=[False, True]).reset_index(drop=True)

    def get_auction_candidates(self, now=None):
        """Forfeited pledges awaiting sale."""
        df = self.get_pledges_df(now)
        return df[df['status'] == calc.FORFEITED].sort_values(by='due_date').reset_index(drop=True)
