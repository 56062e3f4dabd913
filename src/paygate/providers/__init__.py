"""Outbound payment provider REST clients (Stripe, PayPal)."""
