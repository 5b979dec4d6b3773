# paygate/paymentauth/audit.py
"""
Audit logging for payment gate decisions.

This module records payment events for:
- Dispute resolution
- Financial reconciliation
- Detecting replay attempts

Log format: JSON lines (one event per line)
Log location: Configured via PAYMENT_AUDIT_LOG_PATH
Enabled by: PAYMENT_AUDIT_ENABLED

Events logged:
- Challenge issued (challenge id, amount, path)
- Payment verified (transaction hash, payer, amount)
- Payment failed (error kind, message)
- Replay rejected (transaction hash)
"""
import json
import logging
import uuid
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional

from paygate.core.config import settings

logger = logging.getLogger(__name__)


class AuditEventType(Enum):
    """Types of audit events that can be logged."""
    CHALLENGE_ISSUED = "challenge_issued"
    PAYMENT_VERIFIED = "payment_verified"
    PAYMENT_FAILED = "payment_failed"
    REPLAY_REJECTED = "replay_rejected"


def generate_request_id() -> str:
    """Generate a short request ID for correlating events."""
    return str(uuid.uuid4())[:8]


def get_audit_log_path() -> Path:
    return Path(settings.PAYMENT_AUDIT_LOG_PATH)


def create_audit_event(
    event_type: AuditEventType,
    data: Dict[str, Any],
    client_ip: Optional[str] = None,
    request_id: Optional[str] = None
) -> Dict[str, Any]:
    """Build a structured event ready to be written to the audit log."""
    return {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "event_type": event_type.value,
        "request_id": request_id or generate_request_id(),
        "client_ip": client_ip,
        "data": data
    }


def log_audit_event(
    event_type: AuditEventType,
    data: Dict[str, Any],
    client_ip: Optional[str] = None,
    request_id: Optional[str] = None
) -> Optional[str]:
    """
    Append an event to the audit log.

    Returns:
        The request_id used for this event, or None when auditing is
        disabled or the write failed
    """
    if not settings.PAYMENT_AUDIT_ENABLED:
        return None

    event = create_audit_event(event_type, data, client_ip=client_ip, request_id=request_id)

    try:
        log_path = get_audit_log_path()
        log_path.parent.mkdir(parents=True, exist_ok=True)
        with open(log_path, "a") as f:
            f.write(json.dumps(event) + "\n")

        logger.debug(f"Audit event logged: {event_type.value} [{event['request_id']}]")
        return event["request_id"]

    except OSError as e:
        # Auditing must not take down request handling
        logger.error(f"Failed to write audit event: {e}")
        return None


def log_challenge_issued(
    client_ip: str,
    path: str,
    challenge_id: Optional[str],
    amount: Optional[str],
    request_id: Optional[str] = None
) -> Optional[str]:
    return log_audit_event(
        AuditEventType.CHALLENGE_ISSUED,
        {"path": path, "challenge_id": challenge_id, "amount": amount},
        client_ip=client_ip,
        request_id=request_id
    )


def log_payment_verified(
    client_ip: str,
    path: str,
    tx_hash: str,
    payer: str,
    amount: str,
    request_id: Optional[str] = None
) -> Optional[str]:
    return log_audit_event(
        AuditEventType.PAYMENT_VERIFIED,
        {"path": path, "tx_hash": tx_hash, "payer": payer, "amount": amount},
        client_ip=client_ip,
        request_id=request_id
    )


def log_payment_failed(
    client_ip: str,
    path: str,
    error_kind: str,
    message: str,
    status: int,
    request_id: Optional[str] = None
) -> Optional[str]:
    return log_audit_event(
        AuditEventType.PAYMENT_FAILED,
        {"path": path, "error": error_kind, "message": message, "status": status},
        client_ip=client_ip,
        request_id=request_id
    )


def log_replay_rejected(
    client_ip: str,
    path: str,
    credential_id: Optional[str],
    request_id: Optional[str] = None
) -> Optional[str]:
    return log_audit_event(
        AuditEventType.REPLAY_REJECTED,
        {"path": path, "credential_id": credential_id},
        client_ip=client_ip,
        request_id=request_id
    )


def read_audit_log(
    max_entries: int = 100,
    event_type: Optional[AuditEventType] = None
) -> list:
    """
    Read entries from the audit log, most recent first.

    Args:
        max_entries: Maximum number of entries to return
        event_type: Filter by event type (optional)
    """
    log_path = get_audit_log_path()
    if not log_path.exists():
        return []

    events = []
    with open(log_path, "r") as f:
        for line in f:
            line = line.strip()
            if not line:
                continue
            try:
                event = json.loads(line)
            except json.JSONDecodeError:
                continue
            if event_type and event.get("event_type") != event_type.value:
                continue
            events.append(event)

    return list(reversed(events))[:max_entries]


def get_audit_stats() -> Dict[str, Any]:
    """Count audit events by type."""
    events_by_type: Dict[str, int] = {}
    for event in read_audit_log(max_entries=None):
        event_type = event.get("event_type", "unknown")
        events_by_type[event_type] = events_by_type.get(event_type, 0) + 1

    return {
        "total_events": sum(events_by_type.values()),
        "events_by_type": events_by_type,
        "log_path": str(get_audit_log_path()),
    }
