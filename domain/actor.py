"""
Domain: Actor context.

Every operation receives the caller explicitly. Identity is established
upstream (session, API gateway, webhook signature); the engine only decides
what that identity may see and change.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional
from uuid import UUID

from .errors import ValidationError


@dataclass(frozen=True, slots=True)
class ActorContext:
    """
    Caller identity and scope.

    - account_id: registered customer or store owner
    - device_id: long-lived opaque token identifying a guest browser/device
    - is_system: trusted internal caller (gateway webhooks, sweeps)
    """

    account_id: Optional[UUID] = None
    device_id: Optional[str] = None
    is_system: bool = False

    @staticmethod
    def system() -> "ActorContext":
        return ActorContext(is_system=True)

    @property
    def is_guest(self) -> bool:
        return self.account_id is None and self.device_id is not None

    @property
    def actor_id(self) -> Optional[UUID]:
        """Identifier recorded in audit logs (None for guests and the system)."""
        return self.account_id

    def customer_key(self) -> str:
        """Stable key used to count per-customer coupon redemptions."""
        if self.account_id is not None:
            return f"account:{self.account_id}"
        if self.device_id:
            return f"device:{self.device_id}"
        raise ValidationError("An account or device identifier is required")

    def require_identity(self) -> None:
        if self.account_id is None and not self.device_id:
            raise ValidationError("An account or device identifier is required")

    def owns(self, owner_id: Optional[UUID]) -> bool:
        return owner_id is not None and self.account_id == owner_id
