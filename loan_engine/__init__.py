"""
Microloan Engine

Flat-rate microloan arithmetic (interest, schedules, penalties, outstanding
balances) and the loan lifecycle state machine, using Decimal for all money
and atomic storage units for every multi-record change.
"""

__version__ = "1.0.0"
