"""M-Pesa STK push payments and invoice ledger reconciliation."""

__version__ = "0.1.0"
