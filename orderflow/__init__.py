"""
Orderflow — storefront order core

Order status state machine, cart-to-order checkout with oversell
protection, and exactly-once-effective processing of payment webhooks.
"""

__version__ = "0.1.0"
