"""TD Commission Engine - transaction lifecycle and commission ledger for brokerages."""

__version__ = "1.0.0"
