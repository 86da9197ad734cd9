"""
Ledger - durable lifecycle, session and task records.
"""

from .ledger import Ledger

__all__ = ["Ledger"]
