"""Record types for pledges, customers and day-end closings.

Records are persisted as plain dicts (datetimes as ISO 8601 strings) and
rebuilt with ``from_dict``. Quote and breakdown objects are computed on
demand and never stored.
"""
from dataclasses import dataclass, field, fields, asdict
from datetime import datetime
from typing import List, Dict, Any, Optional

from dateutil.parser import isoparse


def _serialize(value):
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, dict):
        return {k: _serialize(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_serialize(v) for v in value]
    return value


def _parse_dt(value):
    if value is None or isinstance(value, datetime):
        return value
    return isoparse(value)


def _known_fields(cls, data):
    names = {f.name for f in fields(cls)}
    return {k: v for k, v in data.items() if k in names}


@dataclass
class PledgeItem:
    """One physical article within a pledge.

    ``deduction`` is an absolute amount or a percentage of the gross value
    depending on ``deduction_type``. The valuation fields are a snapshot
    filled in when the pledge is created.
    """
    category: str
    weight_grams: float
    purity: str = "916"
    deduction: float = 0.0
    deduction_type: str = "amount"
    description: str = ""
    gross_value: Optional[float] = None
    deduction_amount: Optional[float] = None
    net_value: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'PledgeItem':
        return cls(**_known_fields(cls, data))


@dataclass
class ItemValuation:
    gross_value: float
    deduction_amount: float
    net_value: float


@dataclass
class Renewal:
    """One interest payment that pushed the due date forward."""
    date: datetime
    amount_received: float
    extension_months: int
    outstanding_interest_paid: float
    extension_interest_prepaid: float
    previous_due_date: Optional[datetime] = None
    new_due_date: Optional[datetime] = None
    change_given: float = 0.0
    processed_by: str = "System"

    @property
    def interest_paid(self) -> float:
        return round(self.outstanding_interest_paid + self.extension_interest_prepaid, 2)

    def to_dict(self) -> Dict[str, Any]:
        return _serialize(asdict(self))

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Renewal':
        data = _known_fields(cls, data)
        for name in ('date', 'previous_due_date', 'new_due_date'):
            data[name] = _parse_dt(data.get(name))
        return cls(**data)


@dataclass
class Pledge:
    """A loan contract secured by gold items.

    ``loan_amount`` is the principal and never changes after creation. The
    valuation aggregates are frozen at origination.
    """
    id: str
    customer_id: Optional[str]
    items: List[PledgeItem]
    total_weight: float
    gross_value: float
    total_deduction: float
    net_value: float
    loan_percentage: float
    loan_amount: float
    created_at: datetime
    due_date: datetime
    status: str = "active"
    renewals: List[Renewal] = field(default_factory=list)
    rack_location: Optional[str] = None
    payout_method: str = "cash"
    created_by: str = "System"
    redeemed_at: Optional[datetime] = None
    redemption_amount: Optional[float] = None
    amount_received: Optional[float] = None
    change_given: Optional[float] = None
    forfeited_at: Optional[datetime] = None
    auction_price: Optional[float] = None
    auction_buyer: Optional[str] = None
    auctioned_at: Optional[datetime] = None

    @property
    def principal(self) -> float:
        return self.loan_amount

    @property
    def paid_interest(self) -> float:
        """Interest already collected through renewals."""
        return round(sum(r.interest_paid for r in self.renewals), 2)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['items'] = [item.to_dict() for item in self.items]
        data['renewals'] = [r.to_dict() for r in self.renewals]
        return _serialize(data)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Pledge':
        data = _known_fields(cls, data)
        data['items'] = [PledgeItem.from_dict(i) for i in data.get('items', [])]
        data['renewals'] = [Renewal.from_dict(r) for r in data.get('renewals', [])]
        for name in ('created_at', 'due_date', 'redeemed_at', 'forfeited_at', 'auctioned_at'):
            data[name] = _parse_dt(data.get(name))
        return cls(**data)


@dataclass
class Customer:
    id: str
    name: str
    ic_number: str = ""
    phone: str = ""
    active_pledges: int = 0
    total_pledges: int = 0
    total_amount: float = 0.0
    last_visit: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return _serialize(asdict(self))

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Customer':
        data = _known_fields(cls, data)
        data['last_visit'] = _parse_dt(data.get('last_visit'))
        data['created_at'] = _parse_dt(data.get('created_at'))
        data['updated_at'] = _parse_dt(data.get('updated_at'))
        return cls(**data)


@dataclass
class DailyStats:
    """Aggregated cash movements for one calendar date."""
    date: str
    new_pledges_count: int = 0
    new_pledges_amount: float = 0.0
    renewals_count: int = 0
    renewal_interest: float = 0.0
    redemptions_count: int = 0
    redemption_amount: float = 0.0
    total_items_added: int = 0
    total_weight: float = 0.0

    @property
    def cash_out(self) -> float:
        return round(self.new_pledges_amount, 2)

    @property
    def cash_in(self) -> float:
        return round(self.renewal_interest + self.redemption_amount, 2)

    @property
    def net_cash_flow(self) -> float:
        return round(self.cash_in - self.cash_out, 2)


@dataclass
class DayEndRecord:
    """Closed cash-drawer record for one date (keyed by ``date``)."""
    date: str
    opening_balance: float
    closing_balance_actual: Optional[float]
    expected_closing: float
    variance: float
    cash_in: float
    cash_out: float
    new_pledges_count: int = 0
    new_pledges_amount: float = 0.0
    renewals_count: int = 0
    renewal_interest: float = 0.0
    redemptions_count: int = 0
    redemption_amount: float = 0.0
    total_items_added: int = 0
    total_weight: float = 0.0
    notes: str = ""
    closed_at: Optional[datetime] = None
    closed_by: str = "System"

    @property
    def is_balanced(self) -> bool:
        return self.variance == 0

    def to_dict(self) -> Dict[str, Any]:
        return _serialize(asdict(self))

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'DayEndRecord':
        data = _known_fields(cls, data)
        data['closed_at'] = _parse_dt(data.get('closed_at'))
        return cls(**data)


@dataclass
class InterestBreakdown:
    principal: float
    elapsed_months: int
    monthly_interest: List[float]
    total_accrued: float
    paid_interest: float
    outstanding_interest: float
    total_due: float


@dataclass
class RenewalQuote:
    pledge_id: str
    principal: float
    elapsed_months: int
    outstanding_interest: float
    extension_months: int
    extension_interest: float
    total_payable: float
    current_due_date: datetime
    new_due_date: datetime


@dataclass
class RedemptionQuote:
    pledge_id: str
    principal: float
    elapsed_months: int
    outstanding_interest: float
    total_due: float


@dataclass
class PledgeValuation:
    """Per-item valuations and their aggregates."""
    items: List[ItemValuation]
    total_weight: float
    gross_value: float
    total_deduction: float
    net_value: float
