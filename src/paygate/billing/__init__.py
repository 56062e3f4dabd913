"""Subscription domain: subscriber records, lifecycle ledger, license keys."""
