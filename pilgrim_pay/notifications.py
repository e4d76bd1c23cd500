from decimal import Decimal
from html import escape
from typing import Awaitable, Callable

from pilgrim_pay.logging_config import get_logger

logger = get_logger(__name__)


def format_amount(amount: Decimal, currency: str) -> str:
    return f"{currency} {Decimal(str(amount)):,.2f}"


def otp_email(amount: Decimal, code: str, ttl_minutes: int, currency: str) -> tuple[str, str]:
    subject = "Wallet Top-Up Verification Code"
    html = (
        "<h2>Wallet Top-Up Request</h2>"
        f"<p>You have requested to top up an agent's wallet with {escape(format_amount(amount, currency))}.</p>"
        f"<p>Your verification code is: <strong>{escape(code)}</strong></p>"
        f"<p>This code expires in {ttl_minutes} minutes.</p>"
    )
    return subject, html


def topup_receipt_email(agent_name: str, amount: Decimal, new_balance: Decimal, processed_by: str, transaction_ref: str, currency: str) -> tuple[str, str]:
    subject = f"Wallet Top-Up Confirmation - {format_amount(amount, currency)}"
    html = (
        "<h2>Wallet Top-Up Receipt</h2>"
        f"<p>Transaction ID: {escape(transaction_ref)}</p>"
        f"<p>Assalamu Alaikum <strong>{escape(agent_name)}</strong>,</p>"
        "<p>Your wallet has been credited by an administrator.</p>"
        "<table>"
        f"<tr><td>Processed by</td><td>{escape(processed_by)}</td></tr>"
        f"<tr><td>Amount credited</td><td>{escape(format_amount(amount, currency))}</td></tr>"
        f"<tr><td>New balance</td><td>{escape(format_amount(new_balance, currency))}</td></tr>"
        "</table>"
    )
    return subject, html


def payment_receipt_email(booking_reference: str, package_name: str, amount: Decimal, gateway_reference: str, currency: str) -> tuple[str, str]:
    subject = f"Payment Receipt - {booking_reference}"
    html = (
        "<h2>Payment Received</h2>"
        f"<p>We have received your payment for <strong>{escape(package_name)}</strong>.</p>"
        "<table>"
        f"<tr><td>Booking</td><td>{escape(booking_reference)}</td></tr>"
        f"<tr><td>Amount paid</td><td>{escape(format_amount(amount, currency))}</td></tr>"
        f"<tr><td>Payment reference</td><td>{escape(gateway_reference)}</td></tr>"
        "</table>"
    )
    return subject, html


async def run_post_commit(name: str, hook: Callable[[], Awaitable[None]]) -> bool:
    """
    Run a best-effort hook after the owning operation has committed.

    Failures are logged and swallowed; the operation's result is already decided.
    """
    try:
        await hook()
        return True
    except Exception as exc:  # noqa: BLE001
        logger.warning("Post-commit hook failed hook=%s error=%s", name, exc)
        return False
