"""Double-entry ledger core for loans, savings and fixed deposits."""

__version__ = "0.1.0"
