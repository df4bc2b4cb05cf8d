"""
Runtime validation utilities for architectural contracts and inbound keys.

This module provides functions to validate:

- Repository and collaborator implementations against their Protocols
  using @runtime_checkable.
- Caller-supplied idempotency keys before they are combined into composite
  keys or used in storage lookups.

The goal is to catch configuration and data errors early at the
application boundaries rather than halfway through a payment.
"""

import logging
import re
from typing import Optional, Type, TypeVar

from checkout.errors import ValidationError
from checkout.repositories import (
    AuditLog,
    GatewayAdapter,
    OrderRepository,
    StockLedger,
)

logger = logging.getLogger(__name__)

P = TypeVar("P")

IDEMPOTENCY_KEY_PATTERN = re.compile(r"^[A-Za-z0-9\-:.]{8,128}$")


class RepositoryValidationError(Exception):
    """Raised when repository contract validation fails"""

    pass


def validate_repository_protocol(
    repository: object, protocol: Type[P]
) -> None:
    """
    Validate that an implementation satisfies a protocol contract.

    Args:
        repository: The implementation to validate
        protocol: The protocol class to validate against

    Raises:
        RepositoryValidationError: If validation fails
    """
    logger.debug(
        "Validating repository protocol",
        extra={
            "repository_type": type(repository).__name__,
            "protocol_name": protocol.__name__,
        },
    )

    if not isinstance(repository, protocol):
        error_message = (
            f"Repository {type(repository).__name__} does not implement "
            f"{protocol.__name__} protocol. Missing or incorrect methods."
        )
        logger.error(
            "Repository protocol validation failed",
            extra={
                "repository_type": type(repository).__name__,
                "protocol_name": protocol.__name__,
            },
        )
        raise RepositoryValidationError(error_message)


def ensure_repository_protocol(repository: object, protocol: Type[P]) -> P:
    """
    Validate and return a repository with proper type annotation.

    Example:
        >>> from checkout.repos.memory.store import MemoryStore
        >>> from checkout.repos.memory.order import MemoryOrderRepository
        >>> repo = MemoryOrderRepository(MemoryStore())
        >>> validated = ensure_repository_protocol(repo, OrderRepository)
    """
    validate_repository_protocol(repository, protocol)
    return repository  # type: ignore[return-value]


def ensure_order_repository(repository: object) -> OrderRepository:
    return ensure_repository_protocol(repository, OrderRepository)


def ensure_stock_ledger(repository: object) -> StockLedger:
    return ensure_repository_protocol(repository, StockLedger)


def ensure_gateway_adapter(adapter: object) -> GatewayAdapter:
    return ensure_repository_protocol(adapter, GatewayAdapter)


def ensure_audit_log(audit: object) -> AuditLog:
    return ensure_repository_protocol(audit, AuditLog)


def validate_caller_key(caller_key: Optional[str]) -> str:
    """
    Validate the caller-supplied idempotency key from the request header.

    Keys must be 8-128 characters of letters, digits, ``-``, ``:`` or
    ``.``. Underscores are refused because they separate the payment
    method from the caller key in composite keys.

    Raises:
        ValidationError: If the key is missing or malformed
    """
    if not caller_key:
        raise ValidationError(
            "Idempotency key is required to prevent duplicate orders."
        )
    caller_key = caller_key.strip()
    if not IDEMPOTENCY_KEY_PATTERN.match(caller_key):
        raise ValidationError(
            "Idempotency key must be 8-128 characters of letters, digits, "
            "'-', ':' or '.'."
        )
    return caller_key
