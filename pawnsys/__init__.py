"""PawnSys: pledge valuation, interest and cash reconciliation for pawnshops."""
import logging

__version__ = "1.0.0"

logging.getLogger(__name__).addHandler(logging.NullHandler())

from pawnsys.engine import PawnEngine  # noqa: E402
from pawnsys.database import StorageManager  # noqa: E402

__all__ = ['PawnEngine', 'StorageManager', '__version__']
