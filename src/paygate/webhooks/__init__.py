"""Webhook inbound system.

Receives webhooks from Stripe and PayPal.
Each webhook is admission-limited, signature-verified, deduplicated, and
dispatched to the subscription ledger.
"""
