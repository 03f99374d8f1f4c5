import hmac
import hashlib

from fastapi import Header, HTTPException, Request

from game_rewards.adapters import ProviderAdapter


def compute_signature(secret: str, message: str) -> str:
    return hmac.new(secret.encode(), message.encode(), hashlib.sha256).hexdigest()


def sign_payload(adapter: ProviderAdapter, payload: dict, secret: str) -> str:
    return compute_signature(secret, adapter.canonicalize(payload))


def verify_callback_signature(adapter: ProviderAdapter, payload: dict, signature: str, secret: str) -> bool:
    """
    Recompute the provider's signature over its canonical string and compare
    in constant time. Any failure to canonicalize counts as a mismatch.
    """
    if not signature:
        return False
    try:
        expected = sign_payload(adapter, payload, secret)
    except (TypeError, ValueError):
        return False
    return hmac.compare_digest(expected.encode(), signature.strip().lower().encode())


def require_bearer_token(request: Request, authorization: str | None = Header(None, alias="Authorization")):
    """
    FastAPI dependency to enforce Authorization: Bearer <token> when configured.
    """
    bearer_token = request.app.state.settings.bearer_token
    if not bearer_token:
        return
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(status_code=401, detail="Unauthorized")
    token = authorization.split(" ", 1)[1].strip()
    if not hmac.compare_digest(token, bearer_token):
        raise HTTPException(status_code=401, detail="Unauthorized")
