import logging
import os
from typing import List

from fastapi import Depends, FastAPI
from pydantic import BaseModel, Field
from sqlalchemy import JSON, Column, DateTime, Integer, String, Text, create_engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.sql import func

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger("mock-mailer")

DB_URL = os.getenv("MOCK_MAILER_DB_URL", "sqlite:////data/mailer.db")
engine = create_engine(DB_URL, connect_args={"check_same_thread": False})
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base = declarative_base()

app = FastAPI(title="Mock Mail API")


class Email(BaseModel):
    sender: str = Field(..., alias="from")
    to: List[str]
    subject: str
    html: str


class SentEmail(Base):
    __tablename__ = "sent_emails"
    id = Column(Integer, primary_key=True)
    sender = Column(String, nullable=False)
    recipients = Column(JSON, nullable=False)
    subject = Column(String, nullable=False)
    html = Column(Text, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

Base.metadata.create_all(bind=engine)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def _serialize(record: SentEmail) -> dict:
    return {
        "id": record.id,
        "from": record.sender,
        "to": record.recipients,
        "subject": record.subject,
        "html": record.html,
        "createdAt": record.created_at.isoformat() if record.created_at else None,
    }


@app.post("/emails")
async def send_email(payload: Email, db: Session = Depends(get_db)):
    # No API key check here, not needed for mock purposes
    logger.info("Mailer received email subject=%r recipients=%s", payload.subject, payload.to)
    record = SentEmail(
        sender=payload.sender,
        recipients=payload.to,
        subject=payload.subject,
        html=payload.html,
    )
    db.add(record)
    db.commit()
    db.refresh(record)
    return {"id": str(record.id)}


@app.get("/emails")
async def list_emails(db: Session = Depends(get_db)):
    records: List[SentEmail] = db.query(SentEmail).order_by(SentEmail.created_at).all()
    logger.info("Listing %s sent emails", len(records))
    return [_serialize(r) for r in records]


@app.post("/admin/clear-db")
async def clear_db(db: Session = Depends(get_db)):
    """
    Dangerous: clears all captured emails.
    """
    db.query(SentEmail).delete()
    db.commit()
    logger.warning("Cleared mock mailer emails via admin endpoint")
    return {"status": "cleared"}
