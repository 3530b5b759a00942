# ==== AUTHENTICATION AND AUTHORIZATION ==== #

"""
Authentication and capability-based authorization for the ledger.

Actors arrive as JWT bearer tokens carrying ``sub``, ``role`` and, for
client self-service users, ``client_id``. Services authorize against
capabilities rather than role names; the client payment channel is its
own capability (``PAY_VIA_GATEWAY``), so a client is never re-stamped as
a finance user to get past a check.
"""

import datetime as dt
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, FrozenSet, Optional

import jwt
from fastapi import Header, HTTPException

from app.business.errors import UnauthorizedError
from app.settings import settings


# ==== ROLES AND CAPABILITIES ==== #


class Role(str, Enum):
    FOUNDER = "FOUNDER"
    FINANCE_ADMIN = "FINANCE_ADMIN"
    CLIENT = "CLIENT"
    OPERATIONS = "OPERATIONS"
    SYSTEM = "SYSTEM"


class Capability(str, Enum):
    MANAGE_INVOICES = "MANAGE_INVOICES"
    RAISE_DISPUTE = "RAISE_DISPUTE"
    RESOLVE_DISPUTE = "RESOLVE_DISPUTE"
    RECORD_PAYMENT = "RECORD_PAYMENT"
    PAY_VIA_GATEWAY = "PAY_VIA_GATEWAY"
    REVERSE_PAYMENT = "REVERSE_PAYMENT"
    CREATE_NOTE = "CREATE_NOTE"
    APPROVE_NOTE = "APPROVE_NOTE"
    APPLY_NOTE = "APPLY_NOTE"
    ISSUE_PENALTY = "ISSUE_PENALTY"
    VIEW_LEDGER = "VIEW_LEDGER"


_FINANCE = frozenset({
    Capability.MANAGE_INVOICES,
    Capability.RAISE_DISPUTE,
    Capability.RECORD_PAYMENT,
    Capability.CREATE_NOTE,
    Capability.APPLY_NOTE,
    Capability.VIEW_LEDGER,
})

ROLE_CAPABILITIES: Dict[Role, FrozenSet[Capability]] = {
    Role.FOUNDER: _FINANCE | {
        Capability.RESOLVE_DISPUTE,
        Capability.REVERSE_PAYMENT,
        Capability.APPROVE_NOTE,
        Capability.ISSUE_PENALTY,
    },
    Role.FINANCE_ADMIN: _FINANCE,
    Role.CLIENT: frozenset({
        Capability.PAY_VIA_GATEWAY,
        Capability.RAISE_DISPUTE,
        Capability.VIEW_LEDGER,
    }),
    Role.OPERATIONS: frozenset(),
    Role.SYSTEM: frozenset({Capability.VIEW_LEDGER, Capability.ISSUE_PENALTY}),
}


# ==== ACTOR ==== #


@dataclass(frozen=True)
class Actor:
    """Authenticated principal performing a ledger operation."""

    user_id: str
    role: Role
    client_id: Optional[str] = None

    @property
    def is_client(self) -> bool:
        return self.role == Role.CLIENT

    def can(self, capability: Capability) -> bool:
        return capability in ROLE_CAPABILITIES.get(self.role, frozenset())

    def require(self, capability: Capability, operation: str) -> None:
        """
        Raise ``UnauthorizedError`` unless the actor holds ``capability``.

        Args:
            capability (Capability): Capability the operation needs
            operation (str): Operation name for the error message
        """
        if not self.can(capability):
            raise UnauthorizedError(
                f"{self.role.value} may not {operation}",
                actor_id=self.user_id,
                capability=capability.value,
            )

    def require_owner(self, client_id: str, operation: str) -> None:
        """Client actors may only touch their own client's records."""
        if self.is_client and self.client_id != client_id:
            raise UnauthorizedError(
                f"Client {self.client_id} may not {operation} for client {client_id}",
                actor_id=self.user_id,
            )

    def audit_fields(self) -> Dict[str, Any]:
        fields: Dict[str, Any] = {"actor_id": self.user_id, "actor_role": self.role.value}
        if self.client_id:
            fields["actor_client_id"] = self.client_id
        return fields


SYSTEM_ACTOR = Actor(user_id="system", role=Role.SYSTEM)


def gateway_actor(client_id: str, customer_ref: Optional[str] = None) -> Actor:
    """Build the paying client's actor from a verified gateway callback."""
    return Actor(
        user_id=customer_ref or f"gateway:{client_id}",
        role=Role.CLIENT,
        client_id=client_id,
    )


# ==== TOKEN HANDLING ==== #


def decode_actor(token: str) -> Actor:
    """
    Decode a bearer token into an ``Actor``.

    Raises:
        HTTPException: 401 for expired, malformed or unknown-role tokens
    """
    try:
        payload = jwt.decode(
            token,
            settings.JWT_SECRET,
            algorithms=[settings.JWT_ALGORITHM]
        )
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token has expired")
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=401, detail="Invalid token")

    try:
        role = Role(payload.get("role"))
    except ValueError:
        raise HTTPException(status_code=401, detail="Unknown role")

    subject = payload.get("sub")
    if not subject:
        raise HTTPException(status_code=401, detail="Token has no subject")

    client_id = payload.get("client_id")
    if role == Role.CLIENT and not client_id:
        raise HTTPException(status_code=401, detail="Client token has no client_id")

    return Actor(user_id=str(subject), role=role, client_id=client_id)


def get_current_actor(authorization: Optional[str] = Header(None)) -> Actor:
    """
    FastAPI dependency resolving the calling actor.

    Args:
        authorization (Optional[str]): Authorization header with Bearer token

    Returns:
        Actor: Authenticated actor

    Raises:
        HTTPException: If the header is missing or the token is invalid
    """
    # --► AUTHORIZATION HEADER VALIDATION
    if not authorization:
        raise HTTPException(
            status_code=401,
            detail="Authorization header required"
        )

    if not authorization.startswith("Bearer "):
        raise HTTPException(
            status_code=401,
            detail="Invalid authorization header format"
        )

    return decode_actor(authorization.split(" ", 1)[1])


def create_access_token(
    user_id: str,
    role: Role,
    client_id: Optional[str] = None,
    expires_in_hours: int = 24
) -> str:
    """Create a signed access token.

    Args:
        user_id: User identifier
        role: Role granted to the user
        client_id: Linked client for CLIENT users
        expires_in_hours: Token expiration time in hours

    Returns:
        JWT token string
    """
    now = dt.datetime.now(dt.timezone.utc)
    payload: Dict[str, Any] = {
        "sub": user_id,
        "role": Role(role).value,
        "iat": now,
        "exp": now + dt.timedelta(hours=expires_in_hours)
    }
    if client_id:
        payload["client_id"] = client_id

    return jwt.encode(payload, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)
