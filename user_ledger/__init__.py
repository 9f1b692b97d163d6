"""
User Ledger

A small command-line ledger of user balances backed by a relational
database. Transfers run as a single locked transaction and all money
arithmetic uses Decimal.
"""

__version__ = "1.0.0"
