"""
Eligibility Checker — decides which user pairs may chat.

Rules:
  - Admins can chat with anyone.
  - Employees can chat with each other.
  - Family members can chat with family members who share a patient.
  - Employees and family members can chat if they share a patient.
  - Unknown, inactive, or identical users are always denied.

The same rules drive the available-peers list shown in the UI and the
server-side check on every send; the UI filter is advisory only.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone

from carechat.messaging.directory import Directory
from carechat.messaging.models import Role, User

logger = logging.getLogger("chat.permissions")

# Audit log bounds
_AUDIT_MAX = 500
_AUDIT_KEEP = 250


@dataclass
class EligibilityResult:
    """Outcome of an eligibility check."""

    allowed: bool
    reason: str = ""


class EligibilityChecker:
    """
    Checks whether two users may exchange messages.

    Maintains a bounded audit log of every send-time decision.
    """

    def __init__(self, directory: Directory) -> None:
        self._directory = directory
        self._audit_log: list[dict] = []

    def check(self, sender: User | None, receiver: User | None) -> EligibilityResult:
        if sender is None or receiver is None:
            return EligibilityResult(allowed=False, reason="unknown_user")

        if not sender.is_active or not receiver.is_active:
            return EligibilityResult(allowed=False, reason="inactive_user")

        if sender.id == receiver.id:
            return EligibilityResult(allowed=False, reason="self_chat")

        roles = {sender.role, receiver.role}

        if Role.ADMIN in roles:
            return EligibilityResult(allowed=True, reason="admin_any")

        if roles == {Role.EMPLOYEE}:
            return EligibilityResult(allowed=True, reason="employee_peer")

        # family↔family or employee↔family
        shared = self._directory.patients_for(sender) & self._directory.patients_for(receiver)
        if shared:
            return EligibilityResult(allowed=True, reason="shared_patient")
        return EligibilityResult(allowed=False, reason="no_shared_patient")

    def check_ids(self, sender_id: str, receiver_id: str) -> EligibilityResult:
        """Resolve both ids through the directory, check, and audit."""
        result = self.check(
            self._directory.get_user(sender_id),
            self._directory.get_user(receiver_id),
        )
        self._audit(sender_id, receiver_id, result)
        return result

    def eligible_peers(self, user: User) -> list[User]:
        """Every directory user this user may chat with."""
        return [
            other for other in self._directory.list_users()
            if self.check(user, other).allowed
        ]

    def _audit(self, sender_id: str, receiver_id: str, result: EligibilityResult) -> None:
        self._audit_log.append({
            "sender_id": sender_id,
            "receiver_id": receiver_id,
            "allowed": result.allowed,
            "reason": result.reason,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        })
        if len(self._audit_log) > _AUDIT_MAX:
            self._audit_log = self._audit_log[-_AUDIT_KEEP:]

        level = logging.DEBUG if result.allowed else logging.WARNING
        logger.log(
            level,
            "Chat %s: %s → %s [reason=%s]",
            "ALLOWED" if result.allowed else "DENIED",
            sender_id,
            receiver_id,
            result.reason,
        )

    @property
    def audit_log(self) -> list[dict]:
        return list(self._audit_log)
