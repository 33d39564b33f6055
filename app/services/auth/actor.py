"""
Request-scoped caller identity.

The session layer issues a signed token carrying {kind, id}; we only verify it.
Uses itsdangerous for tamper-proof tokens.
"""
from __future__ import annotations

from typing import Literal

from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer
from pydantic import BaseModel

from app.core.config import settings

ActorKind = Literal["customer", "model", "system"]


class Actor(BaseModel):
    """Authenticated caller passed explicitly into every booking operation."""

    kind: ActorKind
    id: str

    model_config = {"frozen": True}

    @classmethod
    def for_customer(cls, customer_id: str) -> "Actor":
        return cls(kind="customer", id=customer_id)

    @classmethod
    def for_model(cls, model_id: str) -> "Actor":
        return cls(kind="model", id=model_id)

    @classmethod
    def system(cls, name: str = "scheduler") -> "Actor":
        return cls(kind="system", id=name)

    @property
    def is_system(self) -> bool:
        return self.kind == "system"


def _serializer() -> URLSafeTimedSerializer:
    return URLSafeTimedSerializer(settings.actor_token_secret, salt=settings.actor_token_salt)


def issue_actor_token(actor: Actor) -> str:
    """Used by the session layer and tests; the booking API only verifies."""
    return _serializer().dumps({"kind": actor.kind, "id": actor.id})


def verify_actor_token(token: str) -> Actor | None:
    """Return the actor, or None if the token is tampered, expired, or not a user actor."""
    try:
        data = _serializer().loads(token, max_age=settings.actor_token_ttl)
    except (BadSignature, SignatureExpired):
        return None
    if not isinstance(data, dict) or data.get("kind") not in ("customer", "model"):
        return None
    if not data.get("id"):
        return None
    return Actor(kind=data["kind"], id=str(data["id"]))
