from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Header, Request, Response
from fastapi.openapi.docs import get_swagger_ui_html
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from pilgrim_pay import models
from pilgrim_pay.checkout import CheckoutInitiator
from pilgrim_pay.collaborators import Principal
from pilgrim_pay.database import engine, get_db
from pilgrim_pay.dependencies import (
    get_checkout_initiator,
    get_otp_service,
    get_settlement_reconciler,
    require_admin,
    require_principal,
)
from pilgrim_pay.errors import NotFound, PilgrimPayError
from pilgrim_pay.helpers import serialize_wallet_transaction
from pilgrim_pay.ledger import WalletLedger
from pilgrim_pay.logging_config import get_logger
from pilgrim_pay.otp import OtpChallengeService
from pilgrim_pay.reconciliation import generate_settlement_reconciliation_csv, generate_wallet_reconciliation_csv
from pilgrim_pay.schemas.app_schemas import (
    CheckoutRequest,
    CheckoutResponse,
    MessageResponse,
    SettlementResponse,
    TopUpRequest,
    TopUpVerifyRequest,
    TopUpVerifyResponse,
    VerifyReferenceRequest,
    WalletView,
)
from pilgrim_pay.security import require_bearer_token
from pilgrim_pay.settlement import SettlementReconciler


logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(_app: FastAPI):
    logger.info("Creating tables and starting Pilgrim Pay settlement service")
    models.Base.metadata.create_all(bind=engine)
    yield


app = FastAPI(title="Pilgrim Pay Settlement", lifespan=lifespan)


@app.exception_handler(PilgrimPayError)
async def pilgrim_pay_error_handler(request: Request, exc: PilgrimPayError):
    if exc.status_code >= 500:
        logger.error("Request failed path=%s code=%s detail=%s", request.url.path, exc.code, exc.detail)
    else:
        logger.info("Request rejected path=%s code=%s detail=%s", request.url.path, exc.code, exc.detail)
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail, "code": exc.code})


@app.exception_handler(SQLAlchemyError)
async def database_error_handler(request: Request, exc: SQLAlchemyError):
    # A 500 lets the gateway redeliver; settlement is idempotent so the retry is safe.
    logger.error("Database failure path=%s error=%s", request.url.path, exc)
    return JSONResponse(status_code=500, content={"detail": "internal error", "code": "internal_error"})


@app.post("/checkout", response_model=CheckoutResponse)
async def checkout(request: CheckoutRequest, initiator: CheckoutInitiator = Depends(get_checkout_initiator)):
    result = await initiator.initiate(request.bookingId, request.payerEmail)
    return {
        "redirectUrl": result.redirect_url,
        "gatewayReference": result.gateway_reference,
        "amount": result.amount,
    }


@app.post("/webhooks/gateway", response_model=SettlementResponse)
async def gateway_webhook(
    request: Request,
    x_signature: str | None = Header(None, alias="X-Signature"),
    reconciler: SettlementReconciler = Depends(get_settlement_reconciler),
):
    raw_body = await request.body()
    result = await reconciler.handle_webhook(raw_body, x_signature)
    return {"status": result.outcome.value, "bookingId": result.booking_id}


@app.post("/payments/verify", response_model=SettlementResponse)
async def verify_payment(
    request: VerifyReferenceRequest,
    reconciler: SettlementReconciler = Depends(get_settlement_reconciler),
):
    result = await reconciler.verify_reference(request.reference)
    return {"status": result.outcome.value, "bookingId": result.booking_id}


@app.post("/admin/payments/{payment_id}/verify", response_model=SettlementResponse)
async def verify_manual_payment(
    payment_id: int,
    admin: Principal = Depends(require_admin),
    reconciler: SettlementReconciler = Depends(get_settlement_reconciler),
):
    result = await reconciler.verify_manual_payment(payment_id, admin)
    return {"status": result.outcome.value, "bookingId": result.booking_id}


@app.post("/admin/payments/{payment_id}/reject", response_model=SettlementResponse)
async def reject_payment(
    payment_id: int,
    admin: Principal = Depends(require_admin),
    reconciler: SettlementReconciler = Depends(get_settlement_reconciler),
):
    result = reconciler.reject_payment(payment_id, admin)
    return {"status": result.outcome.value, "bookingId": result.booking_id}


@app.post("/admin/wallet/topup/request", response_model=MessageResponse)
async def request_topup(
    request: TopUpRequest,
    principal: Principal = Depends(require_principal),
    otp_service: OtpChallengeService = Depends(get_otp_service),
):
    await otp_service.request_topup(principal, request.agentId, request.amount)
    return {"message": "OTP sent successfully"}


@app.post("/admin/wallet/topup/verify", response_model=TopUpVerifyResponse)
async def verify_topup(
    request: TopUpVerifyRequest,
    principal: Principal = Depends(require_principal),
    otp_service: OtpChallengeService = Depends(get_otp_service),
):
    result = await otp_service.verify_topup(principal, request.agentId, request.code)
    return {"message": "Top-up successful", "newBalance": result.new_balance}


@app.get("/admin/agents/{agent_id}/wallet", response_model=WalletView)
async def agent_wallet(
    agent_id: int,
    limit: int = 100,
    _admin: Principal = Depends(require_admin),
    db: Session = Depends(get_db),
):
    if db.get(models.Agent, agent_id) is None:
        raise NotFound(f"agent {agent_id} not found")
    ledger = WalletLedger(db)
    return {
        "agentId": agent_id,
        "balance": ledger.balance(agent_id),
        "transactions": [serialize_wallet_transaction(t) for t in ledger.history(agent_id, limit)],
    }


@app.get("/reconciliation/wallets")
async def download_wallet_reconciliation(_auth=Depends(require_bearer_token), db: Session = Depends(get_db)):
    csv_text, mismatch_count = generate_wallet_reconciliation_csv(db)
    return _csv_response(csv_text, mismatch_count, "wallet_reconciliation.csv")


@app.get("/reconciliation/settlements")
async def download_settlement_reconciliation(_auth=Depends(require_bearer_token), db: Session = Depends(get_db)):
    csv_text, mismatch_count = generate_settlement_reconciliation_csv(db)
    return _csv_response(csv_text, mismatch_count, "settlement_reconciliation.csv")


def _csv_response(csv_text: str, mismatch_count: int, filename: str) -> Response:
    return Response(
        content=csv_text,
        media_type="text/csv",
        headers={
            "Content-Disposition": f'attachment; filename="{filename}"',
            "X-Mismatch-Count": str(mismatch_count),
        },
    )


@app.get("/swagger", include_in_schema=False)
async def swagger_ui():
    return get_swagger_ui_html(openapi_url=str(app.openapi_url), title="Pilgrim Pay - Swagger UI")


@app.get("/health")
async def health():
    return {"status": "ok"}
