"""
Payment gateway adapters.
"""

from .base import HttpGateway, RetryPolicy, new_refund_id
from .phonepe import PhonePeAdapter
from .razorpay import RazorpayAdapter

__all__ = [
    "HttpGateway",
    "PhonePeAdapter",
    "RazorpayAdapter",
    "RetryPolicy",
    "new_refund_id",
]
