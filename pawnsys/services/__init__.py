"""Services package for PawnSys business operations.

Each service loads records from the store, applies the figures computed by
``pawnsys.calculations`` and persists the result.
"""

from .audit_log import AuditLogger
from .customer_service import CustomerService
from .pledge_service import PledgeService
from .day_end_service import DayEndService
from .inventory_service import InventoryService

__all__ = ['AuditLogger', 'CustomerService', 'PledgeService', 'DayEndService', 'InventoryService']
