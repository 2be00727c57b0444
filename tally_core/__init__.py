"""
Tally Billing Core
==================

Billing computation engine for subscription products.

This package provides:
- Pricing strategies (flat, usage, tiered, hybrid, seat, prepaid)
- Proration of mid-cycle plan changes
- Currency conversion across fiat and crypto minor units
- Usage metering with idempotency and limit policies
"""

__version__ = "0.3.0"
