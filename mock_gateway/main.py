import asyncio
import hashlib
import hmac
import json
import logging
import os
import uuid
from typing import Any, List, Optional

import httpx
from fastapi import Depends, FastAPI, HTTPException
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy import JSON, Column, DateTime, Integer, String, create_engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.sql import func

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger("mock-gateway")

DB_URL = os.getenv("MOCK_GATEWAY_DB_URL", "sqlite:////data/gateway.db")
engine = create_engine(DB_URL, connect_args={"check_same_thread": False})
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base = declarative_base()

app = FastAPI(title="Mock Payment Gateway")

SECRET_KEY = os.getenv("GATEWAY_SECRET_KEY", "change_secret")
INTEGRATION_WEBHOOK_URL = os.getenv("INTEGRATION_WEBHOOK_URL")
CHECKOUT_BASE_URL = os.getenv("MOCK_CHECKOUT_BASE_URL", "http://localhost:8001/pay")


class InitializeBody(BaseModel):
    email: str
    amount: int
    reference: str
    currency: str = "NGN"
    callback_url: Optional[str] = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class CompleteBody(BaseModel):
    # Lets a test pay a different amount than was initialized.
    amount: Optional[int] = None
    status: str = "success"


class GatewayTransaction(Base):
    __tablename__ = "gateway_transactions"
    id = Column(Integer, primary_key=True)
    reference = Column(String, unique=True, index=True, nullable=False)
    email = Column(String, nullable=False)
    amount = Column(Integer, nullable=False)
    currency = Column(String, nullable=False)
    status = Column(String, nullable=False, default="pending")
    metadata_json = Column(JSON, nullable=False)
    access_code = Column(String, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


Base.metadata.create_all(bind=engine)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def sign(raw_body: bytes) -> str:
    return hmac.new(SECRET_KEY.encode(), raw_body, hashlib.sha512).hexdigest()


def _serialize_transaction(txn: GatewayTransaction) -> dict:
    return {
        "reference": txn.reference,
        "amount": txn.amount,
        "currency": txn.currency,
        "status": txn.status,
        "customer": {"email": txn.email},
        "metadata": txn.metadata_json,
    }


def _transaction(db: Session, reference: str) -> GatewayTransaction:
    txn = db.query(GatewayTransaction).filter(GatewayTransaction.reference == reference).first()
    if not txn:
        raise HTTPException(status_code=404, detail="Transaction reference not found")
    return txn


async def _send_callback(event: dict):
    if not INTEGRATION_WEBHOOK_URL:
        return
    raw_body = json.dumps(event).encode()
    logger.info("Sending callback event=%s reference=%s", event["event"], event["data"]["reference"])
    try:
        async with httpx.AsyncClient(timeout=5.0) as client:
            await client.post(
                INTEGRATION_WEBHOOK_URL,
                content=raw_body,
                headers={"Content-Type": "application/json", "X-Signature": sign(raw_body)},
            )
    except httpx.HTTPError:
        # A real gateway would redeliver; the mock just logs.
        logger.warning("Failed to deliver callback for reference=%s", event["data"]["reference"])


@app.exception_handler(HTTPException)
async def envelope_error(_request, exc: HTTPException):
    return JSONResponse(status_code=exc.status_code, content={"status": False, "message": exc.detail})


@app.post("/transaction/initialize")
async def initialize(body: InitializeBody, db: Session = Depends(get_db)):
    if body.amount <= 0:
        raise HTTPException(status_code=400, detail="Invalid amount")
    existing = db.query(GatewayTransaction).filter(GatewayTransaction.reference == body.reference).first()
    if existing:
        raise HTTPException(status_code=400, detail="Duplicate Transaction Reference")
    txn = GatewayTransaction(
        reference=body.reference,
        email=body.email,
        amount=body.amount,
        currency=body.currency,
        metadata_json=body.metadata,
        access_code=uuid.uuid4().hex[:12],
    )
    db.add(txn)
    db.commit()
    logger.info("Initialized transaction reference=%s amount=%s", body.reference, body.amount)
    return {
        "status": True,
        "message": "Authorization URL created",
        "data": {
            "authorization_url": f"{CHECKOUT_BASE_URL}/{txn.access_code}",
            "access_code": txn.access_code,
            "reference": txn.reference,
        },
    }


@app.get("/transaction/verify/{reference}")
async def verify(reference: str, db: Session = Depends(get_db)):
    txn = _transaction(db, reference)
    return {"status": True, "message": "Verification successful", "data": _serialize_transaction(txn)}


@app.post("/transaction/{reference}/complete")
async def complete(reference: str, body: CompleteBody, db: Session = Depends(get_db)):
    """
    Simulate the customer finishing payment and fire the signed webhook.
    """
    txn = _transaction(db, reference)
    if body.amount is not None:
        txn.amount = body.amount
    txn.status = body.status
    db.add(txn)
    db.commit()
    event_name = "charge.success" if body.status == "success" else "charge.failed"
    event = {"event": event_name, "data": _serialize_transaction(txn)}
    asyncio.create_task(_send_callback(event))
    return {"status": True, "data": event}


@app.get("/transactions")
async def list_transactions(db: Session = Depends(get_db)):
    txns: List[GatewayTransaction] = db.query(GatewayTransaction).order_by(GatewayTransaction.created_at).all()
    logger.info("Listing %s gateway transactions", len(txns))
    return [_serialize_transaction(t) for t in txns]


@app.post("/admin/clear-db")
async def clear_db(db: Session = Depends(get_db)):
    """
    Dangerous: clears all mock gateway transactions.
    """
    db.query(GatewayTransaction).delete()
    db.commit()
    logger.warning("Cleared mock gateway transactions via admin endpoint")
    return {"status": "cleared"}
