import argparse

from sqlalchemy.orm import Session

from pilgrim_pay.database import SessionLocal
from pilgrim_pay.ledger import WalletLedger
from pilgrim_pay.reconciliation import generate_wallet_reconciliation_csv, wallet_drift


def reconcile(db: Session, output_path: str = "wallet_reconciliation.csv", rebuild: bool = False) -> int:
    csv_text, mismatch_count = generate_wallet_reconciliation_csv(db)
    with open(output_path, "w", newline="") as f:
        f.write(csv_text)
    if rebuild and mismatch_count:
        ledger = WalletLedger(db)
        for agent_id, *_ in wallet_drift(db):
            ledger.rebuild_projection(agent_id)
    return 1 if mismatch_count else 0


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Compare cached wallet balances with the ledger.")
    parser.add_argument("--output", default="wallet_reconciliation.csv")
    parser.add_argument("--rebuild", action="store_true", help="rebuild drifted wallets from the ledger")
    args = parser.parse_args(argv)
    db = SessionLocal()
    try:
        return reconcile(db, args.output, args.rebuild)
    finally:
        db.close()


if __name__ == "__main__":
    raise SystemExit(main())
