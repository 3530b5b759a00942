"""Unit tests for token handling and capability checks."""

import jwt
import pytest
from fastapi import HTTPException

from app.business.errors import UnauthorizedError
from app.security.auth import (
    Actor,
    Capability,
    Role,
    SYSTEM_ACTOR,
    create_access_token,
    decode_actor,
    gateway_actor,
    get_current_actor,
)
from app.settings import settings


@pytest.mark.unit
class TestTokens:

    def test_round_trip(self):
        actor = decode_actor(create_access_token("fin-1", Role.FINANCE_ADMIN))
        assert actor == Actor(user_id="fin-1", role=Role.FINANCE_ADMIN)

    def test_client_token_carries_client_id(self):
        actor = decode_actor(create_access_token("u-1", Role.CLIENT, client_id="client-acme"))
        assert actor.client_id == "client-acme"
        assert actor.is_client

    def test_client_token_without_client_id_rejected(self):
        with pytest.raises(HTTPException) as exc:
            decode_actor(create_access_token("u-1", Role.CLIENT))
        assert exc.value.status_code == 401

    def test_expired_token_rejected(self):
        token = create_access_token("fin-1", Role.FINANCE_ADMIN, expires_in_hours=-1)
        with pytest.raises(HTTPException) as exc:
            decode_actor(token)
        assert exc.value.detail == "Token has expired"

    def test_unknown_role_rejected(self):
        token = jwt.encode({"sub": "x", "role": "ADMIN"}, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)
        with pytest.raises(HTTPException) as exc:
            decode_actor(token)
        assert exc.value.detail == "Unknown role"

    def test_foreign_signature_rejected(self):
        token = jwt.encode({"sub": "x", "role": "FOUNDER"}, "another-secret-of-sufficient-length", algorithm="HS256")
        with pytest.raises(HTTPException) as exc:
            decode_actor(token)
        assert exc.value.status_code == 401

    @pytest.mark.parametrize("header", [None, "Token abc", "Basic Zm9vOmJhcg=="])
    def test_header_required(self, header):
        with pytest.raises(HTTPException) as exc:
            get_current_actor(header)
        assert exc.value.status_code == 401


@pytest.mark.unit
class TestCapabilities:

    def test_finance_cannot_resolve_disputes_or_reverse(self):
        finance = Actor(user_id="fin-1", role=Role.FINANCE_ADMIN)
        assert finance.can(Capability.RECORD_PAYMENT)
        assert not finance.can(Capability.RESOLVE_DISPUTE)
        assert not finance.can(Capability.REVERSE_PAYMENT)
        assert not finance.can(Capability.APPROVE_NOTE)

    def test_founder_holds_every_finance_capability(self):
        founder = Actor(user_id="f-1", role=Role.FOUNDER)
        assert all(founder.can(c) for c in Capability if c != Capability.PAY_VIA_GATEWAY)

    def test_client_pays_only_through_gateway(self):
        client = gateway_actor("client-acme", "cust-9")
        assert client.user_id == "cust-9"
        assert client.can(Capability.PAY_VIA_GATEWAY)
        assert not client.can(Capability.RECORD_PAYMENT)

    def test_require_raises_with_capability(self):
        operations = Actor(user_id="ops-1", role=Role.OPERATIONS)
        with pytest.raises(UnauthorizedError) as exc:
            operations.require(Capability.VIEW_LEDGER, "view receivables")
        assert exc.value.context["capability"] == "VIEW_LEDGER"

    def test_require_owner_only_binds_clients(self):
        client = Actor(user_id="u-1", role=Role.CLIENT, client_id="client-acme")
        client.require_owner("client-acme", "view")
        with pytest.raises(UnauthorizedError):
            client.require_owner("client-globex", "view")

        Actor(user_id="fin-1", role=Role.FINANCE_ADMIN).require_owner("client-globex", "view")

    def test_system_actor_limited_to_penalties(self):
        assert SYSTEM_ACTOR.can(Capability.VIEW_LEDGER)
        assert SYSTEM_ACTOR.can(Capability.ISSUE_PENALTY)
        assert not SYSTEM_ACTOR.can(Capability.MANAGE_INVOICES)
        assert not SYSTEM_ACTOR.can(Capability.CREATE_NOTE)
        assert not SYSTEM_ACTOR.can(Capability.APPROVE_NOTE)

    def test_audit_fields(self):
        assert gateway_actor("client-acme").audit_fields() == {
            "actor_id": "gateway:client-acme",
            "actor_role": "CLIENT",
            "actor_client_id": "client-acme",
        }
