"""Identifiers handed to clients: completion tokens, call rooms and peer ids."""
import secrets

from app.core.config import settings


def new_completion_token() -> str:
    """Single-use QR credential, e.g. "xao_" + 32 URL-safe characters."""
    return settings.completion_token_prefix + secrets.token_urlsafe(settings.completion_token_bytes)


def new_call_room_id() -> str:
    return f"call_{secrets.token_hex(16)}"


def new_peer_id(kind: str) -> str:
    prefix = "cust" if kind == "customer" else "model"
    return f"{prefix}_{secrets.token_hex(8)}"
