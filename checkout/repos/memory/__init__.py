"""
In-memory repository implementations for tests and local development.
"""

from .collaborators import (
    LoggingAuditLog,
    LoggingEmailService,
    LoggingNotificationService,
    PlainTextInvoiceService,
    RecordingAuditLog,
    StaticSellerDirectory,
)
from .order import MemoryOrderRepository
from .stock import MemoryStockLedger
from .store import MemoryStore
from .token_cache import MemoryTokenCache

__all__ = [
    "LoggingAuditLog",
    "LoggingEmailService",
    "LoggingNotificationService",
    "MemoryOrderRepository",
    "MemoryStockLedger",
    "MemoryStore",
    "MemoryTokenCache",
    "PlainTextInvoiceService",
    "RecordingAuditLog",
    "StaticSellerDirectory",
]
