#!/usr/bin/env python3
"""
Show what happened to a checkout: its cart, per-action results and refund.

Usage:
  # One checkout by payment reference (pretty-printed JSON)
  python scripts/show_checkout.py --ref pi_3Nabc...

  # Checkouts still waiting on a confirmation, oldest first
  python scripts/show_checkout.py --pending --limit 20

  # Completed checkouts that owe a refund (to cross-check against Stripe)
  python scripts/show_checkout.py --refunds --compact

Refund failures are only logged by the webhook handler; this is the tool for
checking a reported refund against the processor by hand.
"""

from __future__ import annotations

import argparse
import json
import os
import sys
from typing import Any, Dict

# Allow running from repo root
sys.path.append(os.path.dirname(os.path.dirname(__file__)))

from redacted import create_app
from redacted.models import Checkout, CheckoutStatus


def _as_dict(ck: Checkout) -> Dict[str, Any]:
    return {
        "payment_reference": ck.payment_reference,
        "status": ck.status,
        "total_amount": str(ck.total_amount),
        "refund_amount": str(ck.refund_amount or 0),
        "created_at": ck.created_at.isoformat() if ck.created_at else None,
        "completed_at": ck.completed_at.isoformat() if ck.completed_at else None,
        "actions": ck.cart_actions or [],
        "results": ck.results,
    }


def main():
    ap = argparse.ArgumentParser(description="Inspect stored checkouts")
    ap.add_argument("--ref", default=None, help="Payment reference to show")
    ap.add_argument(
        "--pending", action="store_true", help="List checkouts still pending"
    )
    ap.add_argument(
        "--refunds",
        action="store_true",
        help="List completed checkouts with a non-zero refund",
    )
    ap.add_argument("--limit", type=int, default=50, help="Max rows for lists")
    ap.add_argument(
        "--compact", action="store_true", help="Print compact JSON (one per line)"
    )
    args = ap.parse_args()

    app = create_app()
    with app.app_context():
        if args.ref:
            ck = Checkout.query.filter_by(payment_reference=args.ref).first()
            if ck is None:
                print(f"No checkout with reference {args.ref}", file=sys.stderr)
                sys.exit(1)
            rows = [ck]
        elif args.pending:
            rows = (
                Checkout.query.filter_by(status=CheckoutStatus.PENDING.value)
                .order_by(Checkout.created_at.asc())
                .limit(args.limit)
                .all()
            )
        elif args.refunds:
            rows = (
                Checkout.query.filter(
                    Checkout.status == CheckoutStatus.COMPLETED.value,
                    Checkout.refund_amount > 0,
                )
                .order_by(Checkout.completed_at.desc())
                .limit(args.limit)
                .all()
            )
        else:
            print("You must provide --ref, --pending or --refunds", file=sys.stderr)
            sys.exit(1)

        for ck in rows:
            if args.compact:
                print(json.dumps(_as_dict(ck), ensure_ascii=False))
            else:
                print(json.dumps(_as_dict(ck), ensure_ascii=False, indent=2))


if __name__ == "__main__":
    main()
