"""Payment link ledger: exactly-once claims on top of an external transfer engine."""

__version__ = "0.1.0"
