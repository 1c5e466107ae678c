"""Centralized configuration for PawnSys.

This module contains all magic numbers, default values, and business rule
constants used by the pledge calculations and services. Runtime overrides
are stored in the ``settings`` collection of the store.
"""

# =============================================================================
# GOLD PRICES
# =============================================================================

# Price per gram by purity tier (RM)
DEFAULT_GOLD_PRICES = {
    "999": 320.00,
    "916": 295.00,
    "875": 280.00,
    "835": 270.00,
    "750": 243.00,
    "585": 190.00,
    "375": 122.00,
}

# Purity whose price is used when an item's purity is not in the table
FALLBACK_PURITY = "916"

# =============================================================================
# INTEREST RULES
# =============================================================================

# First tier: months 1..TIER1_MONTHS accrue at TIER1_RATE percent per month
TIER1_MONTHS = 6
TIER1_RATE = 0.5

# Every month after the first tier
TIER2_RATE = 1.5

# Month length used for elapsed-month counting
DAYS_PER_MONTH = 30

# =============================================================================
# PLEDGE DEFAULTS
# =============================================================================

# Initial term in calendar months (due date = created + term)
DEFAULT_PLEDGE_TERM_MONTHS = 6

# Loan-to-value presets offered at the counter (percent)
MARGIN_PRESETS = (80, 70, 60)
DEFAULT_LOAN_PERCENTAGE = 80

# Renewal extension presets (months)
RENEWAL_PRESETS = (1, 2, 3, 6)

PAYOUT_METHODS = ("cash", "bank", "cheque")

# =============================================================================
# CASH DRAWER
# =============================================================================

DEFAULT_OPENING_BALANCE = 5000.00

# =============================================================================
# DISPLAY FORMATS
# =============================================================================

CURRENCY_PLACES = 2

# Date format for day keys (ISO 8601)
DATE_FORMAT_STORAGE = "%Y-%m-%d"

PLEDGE_ID_PREFIX = "PLG"
CUSTOMER_ID_PREFIX = "CUST"
AUDIT_ID_PREFIX = "LOG"

# =============================================================================
# STORAGE
# =============================================================================

STORAGE_KEYS = {
    "customers": "customers",
    "pledges": "pledges",
    "day_end_records": "day_end_records",
    "audit_logs": "audit_logs",
    "settings": "settings",
}

DEFAULT_DB_NAME = "pawnsys.db"

# =============================================================================
# INVENTORY
# =============================================================================

DEFAULT_RACKS = [
    {"id": "A", "name": "Rack A", "slots": 20, "description": "Main storage"},
    {"id": "B", "name": "Rack B", "slots": 20, "description": "Secondary storage"},
    {"id": "C", "name": "Rack C", "slots": 15, "description": "Forfeited items"},
]
