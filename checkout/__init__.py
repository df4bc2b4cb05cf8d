"""
Order creation and payment reconciliation across two payment gateways.
"""

__version__ = "0.1.0"
