"""Recurring subscription provisioning and Stripe reconciliation service."""

__version__ = "0.1.0"
