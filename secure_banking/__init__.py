"""
SecureBank Core

Session lifecycle management and an append-only account ledger with
atomic funding. All monetary values use Decimal precision.
"""

__version__ = "1.0.0"
