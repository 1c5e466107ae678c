"""Business logic engine for PawnSys.

This module provides the PawnEngine class which acts as a facade over
the focused service classes in pawnsys/services/.

Service Classes:
    - CustomerService: Customer records and counters
    - PledgeService: Pledge lifecycle operations
    - DayEndService: Cash drawer reconciliation
    - InventoryService: Rack map
    - AuditLogger: Audit trail
"""
from pawnsys.calculations import InterestRules
from pawnsys.config import (
    STORAGE_KEYS,
    DEFAULT_GOLD_PRICES,
    MARGIN_PRESETS,
    DEFAULT_LOAN_PERCENTAGE,
    RENEWAL_PRESETS,
    PAYOUT_METHODS,
)
from pawnsys.exceptions import ValidationError
from pawnsys.reports import ReportGenerator
from pawnsys.services import (
    AuditLogger,
    CustomerService,
    PledgeService,
    DayEndService,
    InventoryService,
)
from pawnsys.services import audit_log


class PawnEngine:
    """Wires the services to one store.

    Attributes:
        storage: StorageManager instance for data persistence.
        audit: AuditLogger shared by all services.
    """

    def __init__(self, storage):
        self.storage = storage
        self.audit = AuditLogger(storage)
        self._customer_service = None
        self._pledge_service = None
        self._day_end_service = None
        self._inventory_service = None
        self._reports = None

    @property
    def customer_service(self):
        """Lazy-load CustomerService instance."""
        if self._customer_service is None:
            self._customer_service = CustomerService(self.storage, self.audit)
        return self._customer_service

    @property
    def pledge_service(self):
        """Lazy-load PledgeService instance."""
        if self._pledge_service is None:
            self._pledge_service = PledgeService(self.storage, self.customer_service, self.audit)
        return self._pledge_service

    @property
    def day_end_service(self):
        """Lazy-load DayEndService instance."""
        if self._day_end_service is None:
            self._day_end_service = DayEndService(self.storage, self.audit)
        return self._day_end_service

    @property
    def inventory_service(self):
        """Lazy-load InventoryService instance."""
        if self._inventory_service is None:
            self._inventory_service = InventoryService(self.storage, self.pledge_service, self.audit)
        return self._inventory_service

    @property
    def reports(self):
        if self._reports is None:
            self._reports = ReportGenerator(self.storage)
        return self._reports

    # --- Settings -------------------------------------------------------

    def get_interest_rules(self):
        return InterestRules.from_settings(self.storage.get(STORAGE_KEYS['settings'], {}))

    def set_interest_rules(self, tier1_months, tier1_rate, tier2_rate, user="System"):
        """Validate and store new interest tiers."""
        rules = InterestRules.from_settings({'interest_rules': {
            'tier1_months': tier1_months, 'tier1_rate': tier1_rate, 'tier2_rate': tier2_rate,
        }})
        old = self.get_interest_rules()
        self.storage.set_setting('interest_rules', {
            'tier1_months': rules.tier1_months,
            'tier1_rate': rules.tier1_rate,
            'tier2_rate': rules.tier2_rate,
        })
        self.audit.log(audit_log.SETTINGS_CHANGE, "settings", "Updated interest rate rules",
                       {'old': vars(old), 'new': vars(rules)}, user=user)
        return rules

    def get_gold_prices(self):
        return self.pledge_service.get_price_table()

    def set_gold_price(self, purity, price, user="System"):
        """Override the price per gram of one purity tier."""
        try:
            price = float(price)
        except (TypeError, ValueError):
            raise ValidationError(f"Invalid gold price: {price!r}", field="price")
        if price < 0:
            raise ValidationError("Gold price cannot be negative", field="price")
        prices = self.get_gold_prices()
        old = prices.get(str(purity))
        prices[str(purity)] = price
        self.storage.set_setting('gold_prices', prices)
        self.audit.log(audit_log.SETTINGS_CHANGE, "settings", f"Gold price {purity} updated",
                       {'purity': str(purity), 'oldPrice': old, 'newPrice': price}, user=user)
        return prices

    def reset_gold_prices(self):
        self.storage.set_setting('gold_prices', dict(DEFAULT_GOLD_PRICES))

    def get_counter_presets(self):
        """Choices offered on the pledge and renewal forms."""
        return {
            'margins': list(MARGIN_PRESETS),
            'default_margin': DEFAULT_LOAN_PERCENTAGE,
            'renewal_months': list(RENEWAL_PRESETS),
            'payout_methods': list(PAYOUT_METHODS),
        }

    # --- Delegates ------------------------------------------------------

    def create_pledge(self, customer_id, items, loan_percentage, **kwargs):
        """Delegates to PledgeService."""
        return self.pledge_service.create_pledge(customer_id, items, loan_percentage, **kwargs)

    def renew_pledge(self, pledge_id, extension_months, amount_received, now=None, user="System"):
        """Delegates to PledgeService."""
        return self.pledge_service.renew_pledge(pledge_id, extension_months, amount_received, now, user)

    def redeem_pledge(self, pledge_id, amount_received, ic_verified, items_verified, now=None, user="System"):
        """Delegates to PledgeService."""
        return self.pledge_service.redeem_pledge(
            pledge_id, amount_received, ic_verified, items_verified, now, user
        )

    def close_day(self, day, closing_balance, **kwargs):
        """Delegates to DayEndService."""
        return self.day_end_service.close_day(day, closing_balance, **kwargs)

    def reopen_day(self, day, user="System"):
        """Delegates to DayEndService."""
        return self.day_end_service.reopen_day(day, user=user)
