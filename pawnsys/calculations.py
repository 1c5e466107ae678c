"""Pledge financial calculations for PawnSys.

Every money rule lives here so the counter screens, the services and the
reports agree on the same figures:

    - Gold valuation: weight x price per gram, less stone/other deductions.
    - Loan amount: loan-to-value percentage of the summed per-item net values.
    - Tiered interest: simple monthly interest on the fixed principal, at the
      tier 1 rate for the first months and the tier 2 rate afterwards. Months
      are counted as ceil(elapsed days / 30) with a minimum of one.
    - Renewal: outstanding interest plus prepaid interest for the extension.
    - Redemption: principal plus outstanding interest.
    - Day-end: cash in/out for a date and variance against the counted drawer.

All functions are pure. The current time is always passed in by the caller;
``None`` means "now" only at the outermost boundary.
"""
import logging
import math
from dataclasses import dataclass
from datetime import datetime, date, time
from decimal import Decimal, ROUND_HALF_UP

from dateutil.parser import isoparse
from dateutil.relativedelta import relativedelta

from pawnsys.config import (
    DEFAULT_GOLD_PRICES,
    FALLBACK_PURITY,
    TIER1_MONTHS,
    TIER1_RATE,
    TIER2_RATE,
    DAYS_PER_MONTH,
    CURRENCY_PLACES,
    DATE_FORMAT_STORAGE,
)
from pawnsys.data_structures import (
    ItemValuation,
    PledgeValuation,
    InterestBreakdown,
    RenewalQuote,
    RedemptionQuote,
    DailyStats,
)
from pawnsys.exceptions import (
    ValidationError,
    PledgeStatusError,
    VerificationRequiredError,
    InsufficientPaymentError,
)

logger = logging.getLogger(__name__)

# =============================================================================
# PLEDGE STATUS
# =============================================================================

ACTIVE = "active"
OVERDUE = "overdue"
REDEEMED = "redeemed"
FORFEITED = "forfeited"
AUCTIONED = "auctioned"

STATUSES = (ACTIVE, OVERDUE, REDEEMED, FORFEITED, AUCTIONED)
TERMINAL_STATUSES = (REDEEMED, AUCTIONED)

# active -> active is a renewal; overdue -> active is a renewal clearing arrears
ALLOWED_TRANSITIONS = {
    ACTIVE: frozenset({ACTIVE, OVERDUE, REDEEMED}),
    OVERDUE: frozenset({ACTIVE, REDEEMED, FORFEITED}),
    FORFEITED: frozenset({AUCTIONED}),
    REDEEMED: frozenset(),
    AUCTIONED: frozenset(),
}


@dataclass(frozen=True)
class InterestRules:
    """Two-tier monthly interest rates (percent per month)."""
    tier1_months: int = TIER1_MONTHS
    tier1_rate: float = TIER1_RATE
    tier2_rate: float = TIER2_RATE

    def __post_init__(self):
        if self.tier1_months < 0:
            raise ValidationError("Tier 1 duration cannot be negative", field="tier1_months")
        if self.tier1_rate < 0 or self.tier2_rate < 0:
            raise ValidationError("Interest rates cannot be negative", field="interest_rules")

    def rate_for_month(self, month_index: int) -> float:
        return self.tier1_rate if month_index <= self.tier1_months else self.tier2_rate

    @classmethod
    def from_settings(cls, settings: dict = None) -> 'InterestRules':
        """Build rules from the ``interest_rules`` entry of the settings dict."""
        rules = (settings or {}).get('interest_rules') or {}
        try:
            return cls(
                tier1_months=int(rules.get('tier1_months', TIER1_MONTHS)),
                tier1_rate=float(rules.get('tier1_rate', TIER1_RATE)),
                tier2_rate=float(rules.get('tier2_rate', TIER2_RATE)),
            )
        except (TypeError, ValueError):
            raise ValidationError(f"Invalid interest rules: {rules}", field="interest_rules")


DEFAULT_RULES = InterestRules()

# =============================================================================
# COERCION HELPERS
# =============================================================================


def round_currency(value) -> float:
    """Round half-up to currency precision."""
    quantum = Decimal(1).scaleb(-CURRENCY_PLACES)
    return float(Decimal(str(value)).quantize(quantum, rounding=ROUND_HALF_UP))


def to_number(value, field_name: str, default: float = 0.0) -> float:
    """Coerce form input to float. Blank input gives ``default``."""
    if value is None or (isinstance(value, str) and not value.strip()):
        return default
    if isinstance(value, bool):
        raise ValidationError(f"Invalid {field_name}: {value!r}", field=field_name)
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise ValidationError(f"Invalid {field_name}: {value!r}", field=field_name)
    if math.isnan(number) or math.isinf(number):
        raise ValidationError(f"Invalid {field_name}: {value!r}", field=field_name)
    return number


def to_datetime(value, field_name: str = "date") -> datetime:
    """Accept a datetime, a date or an ISO 8601 string."""
    if isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime.combine(value, time.min)
    if isinstance(value, str) and value.strip():
        try:
            return isoparse(value.strip())
        except (ValueError, OverflowError):
            pass
    raise ValidationError(f"Invalid {field_name}: {value!r}", field=field_name)


def resolve_now(value=None, field_name: str = "now") -> datetime:
    """The given instant as a datetime, or the current time for None."""
    return datetime.now() if value is None else to_datetime(value, field_name)


def is_after(moment: datetime, deadline: datetime, field_name: str = "now") -> bool:
    try:
        return moment > deadline
    except TypeError:
        raise ValidationError("Cannot compare timezone-aware and naive dates", field=field_name)


def to_day(value) -> date:
    """Normalize a day key (date, datetime or 'YYYY-MM-DD')."""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        try:
            return datetime.strptime(value.strip(), DATE_FORMAT_STORAGE).date()
        except ValueError:
            pass
    raise ValidationError(f"Invalid date: {value!r}", field="date")


def add_months(value: datetime, months: int) -> datetime:
    """Advance by calendar months (day clamped to the month's end)."""
    return value + relativedelta(months=months)

# =============================================================================
# GOLD VALUATION
# =============================================================================


def validate_price_table(price_table: dict) -> None:
    for purity, price in price_table.items():
        if to_number(price, f"price[{purity}]") < 0:
            raise ValidationError(f"Gold price for {purity} cannot be negative", field="price_table")


def resolve_price(purity, price_table: dict) -> float:
    """Price per gram for a purity, falling back to the 916 price."""
    key = str(purity).strip() if purity is not None else ""
    if key not in price_table:
        if FALLBACK_PURITY not in price_table:
            raise ValidationError(f"No gold price for purity {key!r}", field="purity")
        logger.debug(f"Purity {key!r} not priced, using {FALLBACK_PURITY}")
        key = FALLBACK_PURITY
    price = to_number(price_table[key], f"price[{key}]")
    if price < 0:
        raise ValidationError(f"Gold price for {key} cannot be negative", field="price_table")
    return price


def value_item(item, price_table: dict = None) -> ItemValuation:
    """Gross and net value of one pledge item.

    Args:
        item: PledgeItem (weight, purity, deduction, deduction_type).
        price_table: Purity -> price per gram. Defaults to DEFAULT_GOLD_PRICES.

    Returns:
        ItemValuation with net value never below zero.

    Raises:
        ValidationError: Negative weight or deduction, unknown deduction type.
    """
    prices = DEFAULT_GOLD_PRICES if price_table is None else price_table

    weight = to_number(item.weight_grams, "weight_grams")
    if weight < 0:
        raise ValidationError("Weight cannot be negative", field="weight_grams")
    deduction = to_number(item.deduction, "deduction")
    if deduction < 0:
        raise ValidationError("Deduction cannot be negative", field="deduction")
    if item.deduction_type not in ("amount", "percent"):
        raise ValidationError(f"Unknown deduction type: {item.deduction_type!r}", field="deduction_type")

    if weight == 0:
        return ItemValuation(0.0, 0.0, 0.0)

    gross = round_currency(weight * resolve_price(item.purity, prices))
    if item.deduction_type == "percent":
        deduction_amount = round_currency(gross * deduction / 100)
    else:
        deduction_amount = round_currency(deduction)
    net = max(0.0, round_currency(gross - deduction_amount))
    return ItemValuation(gross, deduction_amount, net)


def value_items(items, price_table: dict = None) -> PledgeValuation:
    """Value every item and aggregate.

    The net total is the sum of the per-item nets, so an item whose
    deduction exceeds its own gross value cannot eat into another item.
    """
    prices = DEFAULT_GOLD_PRICES if price_table is None else price_table
    validate_price_table(prices)

    valuations = [value_item(item, prices) for item in items]
    return PledgeValuation(
        items=valuations,
        total_weight=round(sum(to_number(i.weight_grams, "weight_grams") for i in items), 3),
        gross_value=round_currency(sum(v.gross_value for v in valuations)),
        total_deduction=round_currency(sum(v.deduction_amount for v in valuations)),
        net_value=round_currency(sum(v.net_value for v in valuations)),
    )

# =============================================================================
# LOAN AMOUNT
# =============================================================================


def calculate_loan_amount(net_value, loan_percentage) -> float:
    """Loan amount = net value x loan percentage / 100.

    Raises:
        ValidationError: Percentage outside (0, 100] or negative net value.
    """
    net = to_number(net_value, "net_value")
    pct = to_number(loan_percentage, "loan_percentage")
    if pct <= 0 or pct > 100:
        raise ValidationError(f"Loan percentage must be in (0, 100], got {pct}", field="loan_percentage")
    if net < 0:
        raise ValidationError("Net value cannot be negative", field="net_value")
    return round_currency(net * pct / 100)

# =============================================================================
# INTEREST
# =============================================================================


def elapsed_months(created_at, as_of) -> int:
    """Months charged so far: ceil(days / 30), never less than one."""
    start = to_datetime(created_at, "created_at")
    end = to_datetime(as_of, "as_of")
    try:
        days = (end - start).total_seconds() / 86400
    except TypeError:
        raise ValidationError("Cannot compare timezone-aware and naive dates", field="as_of")
    return max(1, math.ceil(days / DAYS_PER_MONTH))


def monthly_rate(month_index: int, rules: InterestRules = DEFAULT_RULES) -> float:
    """Percent charged for the 1-based ``month_index``."""
    return rules.rate_for_month(month_index)


def monthly_interest(principal: float, month_index: int, rules: InterestRules = DEFAULT_RULES) -> float:
    return principal * monthly_rate(month_index, rules) / 100


def calculate_interest(principal, created_at, as_of=None, paid_interest=0.0,
                       rules: InterestRules = None) -> InterestBreakdown:
    """Tiered simple interest owed on a pledge.

    Args:
        principal: Loan amount.
        created_at: Pledge origination.
        as_of: Calculation instant; None means now.
        paid_interest: Interest already collected via renewals.
        rules: Tier rules; defaults to the configured two-tier rates.

    Returns:
        InterestBreakdown; outstanding interest is never negative.
    """
    rules = rules or DEFAULT_RULES
    principal = to_number(principal, "principal")
    if principal < 0:
        raise ValidationError("Principal cannot be negative", field="principal")
    paid = to_number(paid_interest, "paid_interest")
    if paid < 0:
        raise ValidationError("Paid interest cannot be negative", field="paid_interest")
    if as_of is None:
        as_of = datetime.now()

    months = elapsed_months(created_at, as_of)
    per_month = [monthly_interest(principal, i, rules) for i in range(1, months + 1)]
    total_accrued = round_currency(sum(per_month))
    outstanding = max(0.0, round_currency(total_accrued - paid))

    return InterestBreakdown(
        principal=principal,
        elapsed_months=months,
        monthly_interest=[round_currency(m) for m in per_month],
        total_accrued=total_accrued,
        paid_interest=paid,
        outstanding_interest=outstanding,
        total_due=round_currency(principal + outstanding),
    )


def calculate_extension_interest(principal, current_months: int, extension_months,
                                 rules: InterestRules = None) -> float:
    """Prepaid interest for the months following ``current_months``."""
    rules = rules or DEFAULT_RULES
    months = validate_extension_months(extension_months)
    principal = to_number(principal, "principal")
    return round_currency(sum(
        monthly_interest(principal, current_months + j, rules) for j in range(1, months + 1)
    ))


def validate_extension_months(extension_months) -> int:
    if isinstance(extension_months, bool):
        raise ValidationError("Invalid extension months", field="extension_months")
    try:
        months = int(extension_months)
    except (TypeError, ValueError):
        raise ValidationError(f"Invalid extension months: {extension_months!r}", field="extension_months")
    if months != to_number(extension_months, "extension_months") or months < 1:
        raise ValidationError("Extension must be a whole number of months (at least 1)", field="extension_months")
    return months

# =============================================================================
# STATUS
# =============================================================================


def effective_status(pledge, now=None) -> str:
    """Stored status with the lazy active -> overdue transition applied."""
    if pledge.status == ACTIVE:
        if is_after(resolve_now(now), pledge.due_date):
            return OVERDUE
    return pledge.status


def can_transition(current: str, target: str) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, frozenset())


def ensure_transition(pledge, target: str, action: str, now=None) -> str:
    """Raise PledgeStatusError unless the pledge may move to ``target``.

    Returns:
        The pledge's effective status before the transition.
    """
    current = effective_status(pledge, now)
    if not can_transition(current, target):
        raise PledgeStatusError(pledge.id, current, action)
    return current

# =============================================================================
# RENEWAL & REDEMPTION
# =============================================================================


def quote_renewal(pledge, extension_months, as_of=None, rules: InterestRules = None) -> RenewalQuote:
    """Amount payable to extend a pledge and the resulting due date.

    The new due date is computed from the existing due date, not from
    ``as_of``.
    """
    as_of = resolve_now(as_of, "as_of")
    ensure_transition(pledge, ACTIVE, "renew", as_of)
    months = validate_extension_months(extension_months)

    interest = calculate_interest(pledge.loan_amount, pledge.created_at, as_of,
                                  pledge.paid_interest, rules)
    extension_interest = calculate_extension_interest(
        pledge.loan_amount, interest.elapsed_months, months, rules
    )
    return RenewalQuote(
        pledge_id=pledge.id,
        principal=pledge.loan_amount,
        elapsed_months=interest.elapsed_months,
        outstanding_interest=interest.outstanding_interest,
        extension_months=months,
        extension_interest=extension_interest,
        total_payable=round_currency(interest.outstanding_interest + extension_interest),
        current_due_date=pledge.due_date,
        new_due_date=add_months(pledge.due_date, months),
    )


def quote_redemption(pledge, as_of=None, rules: InterestRules = None) -> RedemptionQuote:
    as_of = resolve_now(as_of, "as_of")
    ensure_transition(pledge, REDEEMED, "redeem", as_of)
    interest = calculate_interest(pledge.loan_amount, pledge.created_at, as_of,
                                  pledge.paid_interest, rules)
    return RedemptionQuote(
        pledge_id=pledge.id,
        principal=pledge.loan_amount,
        elapsed_months=interest.elapsed_months,
        outstanding_interest=interest.outstanding_interest,
        total_due=interest.total_due,
    )


def check_payment(required: float, amount_received, pledge_id: str = None) -> float:
    """Return the change due, or raise InsufficientPaymentError."""
    received = round_currency(to_number(amount_received, "amount_received"))
    if received < 0:
        raise ValidationError("Amount received cannot be negative", field="amount_received")
    if received < required:
        raise InsufficientPaymentError(required, received, pledge_id)
    return round_currency(received - required)


def check_redemption(quote: RedemptionQuote, amount_received, ic_verified: bool,
                     items_verified: bool) -> float:
    """Apply the redemption gates in order: verification, then payment.

    Returns:
        Change to give back.
    """
    missing = []
    if not ic_verified:
        missing.append("ic_verified")
    if not items_verified:
        missing.append("items_verified")
    if missing:
        raise VerificationRequiredError(missing, quote.pledge_id)
    return check_payment(quote.total_due, amount_received, quote.pledge_id)

# =============================================================================
# DAY-END
# =============================================================================


def day_bounds(day):
    """Inclusive [start, end] of a calendar day in local time."""
    d = to_day(day)
    return datetime.combine(d, time.min), datetime.combine(d, time.max)


def day_transactions(pledges, day) -> list:
    """Cash movements of one day as flat rows.

    Rows carry ``type`` (new_pledge / renewal / redemption), ``direction``
    (in / out), ``pledge_id``, ``amount``, ``timestamp``, ``items`` and
    ``weight``.
    """
    start, end = day_bounds(day)
    rows = []
    for pledge in pledges:
        if start <= pledge.created_at <= end:
            rows.append({
                'type': 'new_pledge', 'direction': 'out', 'pledge_id': pledge.id,
                'amount': pledge.loan_amount, 'timestamp': pledge.created_at,
                'items': len(pledge.items), 'weight': pledge.total_weight,
            })
        for renewal in pledge.renewals:
            if start <= renewal.date <= end:
                rows.append({
                    'type': 'renewal', 'direction': 'in', 'pledge_id': pledge.id,
                    'amount': renewal.interest_paid, 'timestamp': renewal.date,
                    'items': 0, 'weight': 0.0,
                })
        if pledge.status == REDEEMED and pledge.redeemed_at and start <= pledge.redeemed_at <= end:
            amount = pledge.redemption_amount if pledge.redemption_amount is not None else pledge.loan_amount
            rows.append({
                'type': 'redemption', 'direction': 'in', 'pledge_id': pledge.id,
                'amount': amount, 'timestamp': pledge.redeemed_at,
                'items': 0, 'weight': 0.0,
            })
    rows.sort(key=lambda r: r['timestamp'])
    return rows


def summarize_day(pledges, day) -> DailyStats:
    """Counts and amounts of the day's disbursements and collections."""
    stats = DailyStats(date=to_day(day).strftime(DATE_FORMAT_STORAGE))
    for row in day_transactions(pledges, day):
        if row['type'] == 'new_pledge':
            stats.new_pledges_count += 1
            stats.new_pledges_amount += row['amount']
            stats.total_items_added += row['items']
            stats.total_weight += row['weight']
        elif row['type'] == 'renewal':
            stats.renewals_count += 1
            stats.renewal_interest += row['amount']
        else:
            stats.redemptions_count += 1
            stats.redemption_amount += row['amount']

    stats.new_pledges_amount = round_currency(stats.new_pledges_amount)
    stats.renewal_interest = round_currency(stats.renewal_interest)
    stats.redemption_amount = round_currency(stats.redemption_amount)
    stats.total_weight = round(stats.total_weight, 3)
    return stats


def reconcile(opening_balance, cash_in, cash_out, closing_balance_actual=None):
    """Expected closing balance and variance against the counted cash.

    Returns:
        (expected_closing, variance). Variance is 0 while no count has been
        entered; positive is a surplus, negative a shortage.
    """
    opening = to_number(opening_balance, "opening_balance")
    expected = round_currency(opening + to_number(cash_in, "cash_in") - to_number(cash_out, "cash_out"))
    if closing_balance_actual is None or closing_balance_actual == "":
        return expected, 0.0
    actual = to_number(closing_balance_actual, "closing_balance_actual")
    return expected, round_currency(actual - expected)
