"""Pledge lifecycle service for PawnSys.

This service handles all pledge operations including:
- Pledge creation (valuation + loan amount)
- Renewals (interest payment + due date extension)
- Redemptions (full payoff)
- Forfeiture and auction sale

Figures come from ``pawnsys.calculations``; this module only loads records,
applies the results and persists them.
"""
import logging

from pawnsys.config import (
    STORAGE_KEYS,
    DEFAULT_GOLD_PRICES,
    DEFAULT_LOAN_PERCENTAGE,
    DEFAULT_PLEDGE_TERM_MONTHS,
    PAYOUT_METHODS,
    PLEDGE_ID_PREFIX,
)
from pawnsys import calculations as calc
from pawnsys.data_structures import Pledge, PledgeItem, Renewal
from pawnsys.exceptions import PawnSysError, PledgeNotFoundError, ValidationError
from pawnsys.services import audit_log
from pawnsys.services.inventory_service import load_racks, normalize_location

logger = logging.getLogger(__name__)


class PledgeService:
    """Handles pledge lifecycle operations.

    Attributes:
        storage: StorageManager holding the ``pledges`` collection.
        customers: Optional CustomerService whose counters are kept in step.
        audit: Optional AuditLogger receiving one entry per state change.
    """

    def __init__(self, storage, customer_service=None, audit_logger=None):
        self.storage = storage
        self.customers = customer_service
        self.audit = audit_logger

    @property
    def rules(self):
        """Interest tiers, honouring any override in settings."""
        return calc.InterestRules.from_settings(self.storage.get(STORAGE_KEYS['settings'], {}))

    def get_price_table(self):
        """Current gold price snapshot (settings override or defaults)."""
        prices = self.storage.get_setting('gold_prices')
        return dict(prices) if prices else dict(DEFAULT_GOLD_PRICES)

    def _load(self):
        return [Pledge.from_dict(p) for p in self.storage.get(STORAGE_KEYS['pledges'], [])]

    def _save(self, pledges):
        self.storage.set(STORAGE_KEYS['pledges'], [p.to_dict() for p in pledges])

    def _next_id(self, pledges, year):
        max_num = 0
        for p in pledges:
            try:
                prefix, p_year, num = p.id.split('-')
                if p_year == str(year) and int(num) > max_num:
                    max_num = int(num)
            except ValueError:
                pass
        return f"{PLEDGE_ID_PREFIX}-{year}-{max_num + 1:06d}"

    def _find(self, pledges, pledge_id):
        for p in pledges:
            if p.id == pledge_id:
                return p
        raise PledgeNotFoundError(pledge_id)

    def _log(self, action, module, description, details, user, now):
        if self.audit:
            self.audit.log(action, module, description, details, user=user, now=now)

    def get_pledge(self, pledge_id):
        return self._find(self._load(), pledge_id)

    def list_pledges(self, status=None, customer_id=None, now=None):
        """Pledges filtered by effective status and/or customer."""
        now = calc.resolve_now(now)
        result = []
        for p in self._load():
            if customer_id and p.customer_id != customer_id:
                continue
            if status and calc.effective_status(p, now) != status:
                continue
            result.append(p)
        return result

    def get_status(self, pledge_id, now=None):
        return calc.effective_status(self.get_pledge(pledge_id), now)

    def get_interest(self, pledge_id, now=None):
        pledge = self.get_pledge(pledge_id)
        return calc.calculate_interest(pledge.loan_amount, pledge.created_at, now,
                                       pledge.paid_interest, self.rules)

    def _prepare_items(self, items, price_table):
        """Value the entered rows and keep the complete ones.

        A row is complete when it has a category and a positive weight.
        Blank rows are ignored; negative figures are rejected.
        """
        items = [PledgeItem.from_dict(i.to_dict() if isinstance(i, PledgeItem) else i) for i in items or []]
        valuation = calc.value_items(items, price_table)

        complete = []
        for item, value in zip(items, valuation.items):
            if (item.category or "").strip() and calc.to_number(item.weight_grams, "weight_grams") > 0:
                item.weight_grams = calc.to_number(item.weight_grams, "weight_grams")
                item.deduction = calc.to_number(item.deduction, "deduction")
                item.purity = str(item.purity)
                item.gross_value = value.gross_value
                item.deduction_amount = value.deduction_amount
                item.net_value = value.net_value
                complete.append(item)
        if not complete:
            raise ValidationError("At least one item with category and weight is required", field="items")
        return complete, calc.value_items(complete, price_table)

    def preview_valuation(self, items, loan_percentage=DEFAULT_LOAN_PERCENTAGE, price_table=None):
        """Valuation and loan amount without creating anything.

        Returns:
            (PledgeValuation, loan_amount)
        """
        prices = price_table if price_table is not None else self.get_price_table()
        _, valuation = self._prepare_items(items, prices)
        return valuation, calc.calculate_loan_amount(valuation.net_value, loan_percentage)

    def create_pledge(self, customer_id, items, loan_percentage=DEFAULT_LOAN_PERCENTAGE,
                      price_table=None, now=None, term_months=DEFAULT_PLEDGE_TERM_MONTHS,
                      payout_method="cash", rack_location=None, user="System"):
        """Create a pledge and disburse the loan.

        Args:
            customer_id: Existing customer ID.
            items: PledgeItem objects or dicts with the same keys.
            loan_percentage: Loan-to-value percentage in (0, 100].
            price_table: Gold prices snapshot (defaults to current prices).
            now: Origination timestamp.
            term_months: Months until the first due date.
            payout_method: One of PAYOUT_METHODS.
            rack_location: Optional rack slot, e.g. "A-3".
            user: Acting staff member.

        Returns:
            The stored Pledge.

        Raises:
            ValidationError: Bad items, percentage, term, payout method or rack slot.
            CustomerNotFoundError: Unknown customer.
            RackNotFoundError: ``rack_location`` names a rack that does not exist.
        """
        now = calc.resolve_now(now)
        prices = price_table if price_table is not None else self.get_price_table()

        if payout_method not in PAYOUT_METHODS:
            raise ValidationError(f"Unknown payout method: {payout_method!r}", field="payout_method")
        try:
            term = calc.validate_extension_months(term_months)
        except ValidationError:
            raise ValidationError("Term must be a whole number of months (at least 1)", field="term_months")

        items, valuation = self._prepare_items(items, prices)
        loan_amount = calc.calculate_loan_amount(valuation.net_value, loan_percentage)
        if loan_amount <= 0:
            raise ValidationError("Items have no net value to lend against", field="items")

        location = normalize_location(rack_location, load_racks(self.storage)) if rack_location else None
        if self.customers:
            self.customers.get_customer(customer_id)

        pledges = self._load()
        pledge = Pledge(
            id=self._next_id(pledges, now.year),
            customer_id=customer_id,
            items=items,
            total_weight=valuation.total_weight,
            gross_value=valuation.gross_value,
            total_deduction=valuation.total_deduction,
            net_value=valuation.net_value,
            loan_percentage=float(loan_percentage),
            loan_amount=loan_amount,
            created_at=now,
            due_date=calc.add_months(now, term),
            rack_location=location,
            payout_method=payout_method,
            created_by=user,
        )
        pledges.append(pledge)

        with self.storage.transaction():
            self._save(pledges)
            if self.customers:
                self.customers.record_new_pledge(customer_id, loan_amount, now)
            self._log(audit_log.PLEDGE_CREATE, "pledge", f"Created new pledge {pledge.id}",
                      {'pledge_id': pledge.id, 'customer_id': customer_id, 'amount': loan_amount},
                      user, now)

        logger.info(f"Pledge {pledge.id} created: loan {loan_amount:.2f} on net value {valuation.net_value:.2f}")
        return pledge

    def quote_renewal(self, pledge_id, extension_months, now=None):
        return calc.quote_renewal(self.get_pledge(pledge_id), extension_months, now, self.rules)

    def renew_pledge(self, pledge_id, extension_months, amount_received, now=None, user="System"):
        """Collect interest and push the due date forward.

        Returns:
            The updated Pledge; its last renewal is the one just recorded.

        Raises:
            PledgeNotFoundError, PledgeStatusError, ValidationError,
            InsufficientPaymentError. Nothing is stored on failure.
        """
        now = calc.resolve_now(now)
        pledges = self._load()
        pledge = self._find(pledges, pledge_id)
        try:
            quote = calc.quote_renewal(pledge, extension_months, now, self.rules)
            change = calc.check_payment(quote.total_payable, amount_received, pledge_id)
        except PawnSysError as e:
            logger.warning(f"Renewal of {pledge_id} rejected: {e}")
            raise

        renewal = Renewal(
            date=now,
            amount_received=calc.round_currency(calc.to_number(amount_received, "amount_received")),
            extension_months=quote.extension_months,
            outstanding_interest_paid=quote.outstanding_interest,
            extension_interest_prepaid=quote.extension_interest,
            previous_due_date=pledge.due_date,
            new_due_date=quote.new_due_date,
            change_given=change,
            processed_by=user,
        )
        pledge.renewals.append(renewal)
        pledge.due_date = quote.new_due_date
        pledge.status = calc.ACTIVE

        with self.storage.transaction():
            self._save(pledges)
            if self.customers and pledge.customer_id:
                self.customers.record_visit(pledge.customer_id, now)
            self._log(audit_log.RENEWAL, "renewal", f"Processed renewal for {pledge_id}",
                      {'pledge_id': pledge_id, 'interest': quote.total_payable,
                       'extension_months': quote.extension_months},
                      user, now)

        logger.info(f"Pledge {pledge_id} renewed {quote.extension_months}m for {quote.total_payable:.2f}")
        return pledge

    def quote_redemption(self, pledge_id, now=None):
        return calc.quote_redemption(self.get_pledge(pledge_id), now, self.rules)

    def redeem_pledge(self, pledge_id, amount_received, ic_verified=False, items_verified=False,
                      now=None, user="System"):
        """Pay off principal and interest and release the items.

        Raises:
            PledgeNotFoundError, PledgeStatusError, VerificationRequiredError,
            InsufficientPaymentError. Nothing is stored on failure.
        """
        now = calc.resolve_now(now)
        pledges = self._load()
        pledge = self._find(pledges, pledge_id)
        try:
            quote = calc.quote_redemption(pledge, now, self.rules)
            change = calc.check_redemption(quote, amount_received, ic_verified, items_verified)
        except PawnSysError as e:
            logger.warning(f"Redemption of {pledge_id} rejected: {e}")
            raise

        pledge.status = calc.REDEEMED
        pledge.redeemed_at = now
        pledge.redemption_amount = quote.total_due
        pledge.amount_received = calc.round_currency(calc.to_number(amount_received, "amount_received"))
        pledge.change_given = change

        with self.storage.transaction():
            self._save(pledges)
            if self.customers and pledge.customer_id:
                self.customers.record_redemption(pledge.customer_id, now)
            self._log(audit_log.REDEMPTION, "redemption", f"Processed redemption for {pledge_id}",
                      {'pledge_id': pledge_id, 'totalPaid': quote.total_due, 'items': len(pledge.items)},
                      user, now)

        logger.info(f"Pledge {pledge_id} redeemed for {quote.total_due:.2f} (change {change:.2f})")
        return pledge

    def forfeit_pledge(self, pledge_id, now=None, user="System"):
        """Declare an overdue pledge defaulted."""
        now = calc.resolve_now(now)
        pledges = self._load()
        pledge = self._find(pledges, pledge_id)
        calc.ensure_transition(pledge, calc.FORFEITED, "forfeit", now)

        days_overdue = (now - pledge.due_date).days
        pledge.status = calc.FORFEITED
        pledge.forfeited_at = now

        with self.storage.transaction():
            self._save(pledges)
            self._log(audit_log.FORFEIT, "auction", "Marked pledge as forfeited",
                      {'pledge_id': pledge_id, 'daysOverdue': days_overdue}, user, now)

        logger.info(f"Pledge {pledge_id} forfeited ({days_overdue} days overdue)")
        return pledge

    def record_auction(self, pledge_id, sale_price, buyer, now=None, user="System"):
        """Record the auction sale of a forfeited pledge."""
        now = calc.resolve_now(now)
        pledges = self._load()
        pledge = self._find(pledges, pledge_id)
        calc.ensure_transition(pledge, calc.AUCTIONED, "auction", now)

        price = calc.to_number(sale_price, "sale_price")
        if price <= 0:
            raise ValidationError("Sale price must be positive", field="sale_price")
        buyer = (buyer or "").strip()
        if not buyer:
            raise ValidationError("Buyer is required", field="buyer")

        pledge.status = calc.AUCTIONED
        pledge.auction_price = calc.round_currency(price)
        pledge.auction_buyer = buyer
        pledge.auctioned_at = now

        with self.storage.transaction():
            self._save(pledges)
            self._log(audit_log.AUCTION, "auction", "Recorded auction sale",
                      {'pledge_id': pledge_id, 'salePrice': pledge.auction_price, 'buyer': buyer},
                      user, now)

        logger.info(f"Pledge {pledge_id} auctioned to {buyer} for {pledge.auction_price:.2f}")
        return pledge

    def update_rack_location(self, pledge_id, location, user="System", now=None):
        """Move a pledge's items to another slot; financial state is untouched."""
        now = calc.resolve_now(now)
        pledges = self._load()
        pledge = self._find(pledges, pledge_id)
        previous = pledge.rack_location
        pledge.rack_location = location.strip().upper() if location else None

        with self.storage.transaction():
            self._save(pledges)
            self._log(audit_log.PLEDGE_UPDATE, "inventory", f"Moved {pledge_id} to {pledge.rack_location}",
                      {'pledge_id': pledge_id, 'from': previous, 'to': pledge.rack_location},
                      user, now)
        return pledge
