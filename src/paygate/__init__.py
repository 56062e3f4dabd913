"""Payment webhook gateway.

Receives Stripe and PayPal notifications, authenticates and deduplicates
them, and drives a per-customer subscription ledger.
"""

__version__ = "2.0.0"
