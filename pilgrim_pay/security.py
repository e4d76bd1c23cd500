import hmac
import hashlib
from fastapi import HTTPException, Header

from pilgrim_pay.config import settings
from pilgrim_pay.errors import InvalidSignature
from pilgrim_pay.logging_config import get_fraud_logger

fraud_logger = get_fraud_logger()


def compute_signature(raw_body: bytes, secret: str) -> str:
    return hmac.new(secret.encode(), raw_body, hashlib.sha512).hexdigest()


def validate_signature(raw_body: bytes, signature: str | None, secret: str):
    """
    Reject a gateway callback unless its signature is an HMAC-SHA-512 of the exact raw body.
    """
    if not signature:
        fraud_logger.warning("Gateway callback without signature rejected")
        raise InvalidSignature("missing signature")
    expected = compute_signature(raw_body, secret)
    if not hmac.compare_digest(expected, signature.strip().lower()):
        fraud_logger.error("Invalid gateway callback signature detected body_length=%s", len(raw_body))
        raise InvalidSignature("invalid signature")


def bearer_token(authorization: str | None) -> str | None:
    if not authorization or not authorization.startswith("Bearer "):
        return None
    token = authorization.split(" ", 1)[1].strip()
    return token or None


def require_bearer_token(authorization: str | None = Header(None, alias="Authorization")):
    """
    FastAPI dependency guarding operator endpoints with Authorization: Bearer <token> when configured.
    """
    if not settings.ops_bearer_token:
        return
    token = bearer_token(authorization)
    if not token or not hmac.compare_digest(token, settings.ops_bearer_token):
        raise HTTPException(status_code=401, detail="Unauthorized")
