"""
Core Lending Payments

Payment transaction lifecycle and reconciliation engine for a back-office lending
platform: disbursements and scheduled collections moved through an external payment
processor, tracked in a forward-only ledger and reconciled against the processor's
authoritative status. All monetary values use Decimal precision.
"""

__version__ = "1.0.0"
