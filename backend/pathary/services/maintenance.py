"""Periodic purge of expired security data"""

import logging
from typing import Dict

from sqlalchemy.orm import Session

from pathary.services.audit_service import security_audit_service
from pathary.services.token_service import token_service
from pathary.services.trusted_device_service import trusted_device_service

logger = logging.getLogger(__name__)


def run_security_maintenance(db: Session) -> Dict[str, int]:
    """Delete expired auth tokens and trusted devices, and audit events past retention"""
    removed = {
        "auth_tokens": token_service.delete_expired_tokens(db),
        "trusted_devices": trusted_device_service.cleanup_expired_devices(db),
        "audit_events": security_audit_service.cleanup_old_events(db),
    }
    logger.info(
        f"Maintenance removed {removed['auth_tokens']} tokens, "
        f"{removed['trusted_devices']} devices, {removed['audit_events']} audit events"
    )
    return removed
