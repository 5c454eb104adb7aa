"""
Audit logger.

`record_event` is fire-and-forget: a failed write is reported on the
`audit` logger and never propagates into the calling operation.
"""

import logging
from typing import Any, Dict, Optional

from django.conf import settings
from django.core.exceptions import ValidationError
from django.core.validators import validate_ipv46_address
from django.db import DatabaseError, transaction

from .models import AuditLogEntry

logger = logging.getLogger("audit")

EventType = AuditLogEntry.EventType


def client_ip(request) -> Optional[str]:
    """
    Client address for audit entries.

    `X-Forwarded-For` is only consulted behind a trusted proxy
    (`AUDIT_TRUST_X_FORWARDED_FOR`). Values that are not IP addresses are dropped.
    """
    if getattr(settings, "AUDIT_TRUST_X_FORWARDED_FOR", False):
        forwarded = request.META.get("HTTP_X_FORWARDED_FOR", "")
        address = _valid_ip(forwarded.split(",")[0].strip())
        if address:
            return address
    return _valid_ip(request.META.get("REMOTE_ADDR"))


def _valid_ip(value) -> Optional[str]:
    if not value:
        return None
    try:
        validate_ipv46_address(value)
    except ValidationError:
        logger.warning("Ignoring malformed client address %r", value[:64])
        return None
    return value


def record_event(
    event_type: str,
    voter=None,
    ip_address: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None,
) -> Optional[AuditLogEntry]:
    """
    Append an audit entry.

    Returns the created entry, or None when the write failed.
    """
    try:
        # Savepoint so a failed insert doesn't poison an enclosing transaction.
        with transaction.atomic():
            return AuditLogEntry.objects.create(
                event_type=event_type,
                voter=voter,
                ip_address=ip_address,
                details=details or {},
            )
    except DatabaseError:
        logger.exception(
            "Failed to write audit entry event=%s voter=%s",
            event_type,
            getattr(voter, "pk", None),
        )
        return None
