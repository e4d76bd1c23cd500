"""
FastAPI providers. Every collaborator a handler needs is built here per request,
so tests swap them through ``app.dependency_overrides``.
"""
from fastapi import Depends, Header
from sqlalchemy.orm import Session

from pilgrim_pay.checkout import CheckoutInitiator
from pilgrim_pay.clients.gateway_client import GatewayClient
from pilgrim_pay.clients.mail_client import MailClient
from pilgrim_pay.collaborators import DbActivityRecorder, Principal, StaffDirectory
from pilgrim_pay.config import Settings, settings
from pilgrim_pay.database import get_db
from pilgrim_pay.errors import AuthenticationFailure, AuthorizationFailure
from pilgrim_pay.otp import OtpChallengeService
from pilgrim_pay.security import bearer_token
from pilgrim_pay.settlement import SettlementReconciler


def get_settings() -> Settings:
    return settings


async def get_gateway_client(config: Settings = Depends(get_settings)):
    client = GatewayClient(config)
    try:
        yield client
    finally:
        await client.aclose()


async def get_notifier(config: Settings = Depends(get_settings)):
    client = MailClient(config)
    try:
        yield client
    finally:
        await client.aclose()


def get_authorizer(db: Session = Depends(get_db)):
    return StaffDirectory(db)


def get_activity_recorder(db: Session = Depends(get_db)):
    return DbActivityRecorder(db)


def require_principal(
    authorization: str | None = Header(None, alias="Authorization"),
    authorizer=Depends(get_authorizer),
) -> Principal:
    token = bearer_token(authorization)
    if not token:
        raise AuthenticationFailure("missing bearer token")
    principal = authorizer.resolve_principal(token)
    if principal is None:
        raise AuthenticationFailure("invalid bearer token")
    return principal


def require_admin(principal: Principal = Depends(require_principal), authorizer=Depends(get_authorizer)) -> Principal:
    if not authorizer.is_admin(principal.user_id):
        raise AuthorizationFailure("admin role required")
    return principal


def get_checkout_initiator(
    db: Session = Depends(get_db),
    gateway=Depends(get_gateway_client),
    config: Settings = Depends(get_settings),
) -> CheckoutInitiator:
    return CheckoutInitiator(db, gateway, config)


def get_settlement_reconciler(
    db: Session = Depends(get_db),
    config: Settings = Depends(get_settings),
    notifier=Depends(get_notifier),
    activity=Depends(get_activity_recorder),
    gateway=Depends(get_gateway_client),
) -> SettlementReconciler:
    return SettlementReconciler(db, config, notifier, activity, gateway)


def get_otp_service(
    db: Session = Depends(get_db),
    config: Settings = Depends(get_settings),
    authorizer=Depends(get_authorizer),
    notifier=Depends(get_notifier),
) -> OtpChallengeService:
    return OtpChallengeService(db, config, authorizer, notifier)
