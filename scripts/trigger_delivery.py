#!/usr/bin/env python3
"""
Dev helper for the delivery backend.

Two modes:

  trigger   POST order ids to /api/delivery/order-completed on a running
            backend (or /orders/{id}/resend with --resend).
  preview   Watermark a local PDF exactly as delivery would and write the
            result next to it, so the stamp can be checked by eye.

Usage
-----
# Deliver two completed orders through the local backend
python scripts/trigger_delivery.py trigger order-uuid-1 order-uuid-2

# Re-send a single order
python scripts/trigger_delivery.py trigger order-uuid-1 --resend

# Target a different backend URL
python scripts/trigger_delivery.py trigger order-uuid-1 --url http://staging.example.com

# Watermark a local file for alice@example.com -> pattern.watermarked.pdf
python scripts/trigger_delivery.py preview pattern.pdf --email alice@example.com

Environment / .env
------------------
DELIVERY_WEBHOOK_SECRET   Shared webhook secret (required for trigger).
BRAND_MARK_PATH           Logo used by preview (optional).
"""

import argparse
import json
import os
import sys
import textwrap
from pathlib import Path

import httpx
from dotenv import load_dotenv

PROJECT_ROOT = Path(__file__).resolve().parent.parent


# ---------------------------------------------------------------------------
# Pretty printer
# ---------------------------------------------------------------------------

def _print_response(response: httpx.Response) -> None:
    status = response.status_code
    symbol = "OK" if status == 202 else "FAIL"
    print(f"\n[{symbol}] HTTP {status}")
    try:
        print(json.dumps(response.json(), indent=2))
    except ValueError:
        print(response.text)


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

def _trigger(args: argparse.Namespace) -> int:
    secret = os.getenv("DELIVERY_WEBHOOK_SECRET", "").strip()
    if not secret:
        print("ERROR: DELIVERY_WEBHOOK_SECRET is not set (env or .env)", file=sys.stderr)
        return 1

    base = args.url.rstrip("/") + "/api/delivery"
    headers = {"X-Webhook-Secret": secret}

    if args.resend:
        if len(args.order_ids) != 1:
            print("ERROR: --resend takes exactly one order id", file=sys.stderr)
            return 1
        endpoint = f"{base}/orders/{args.order_ids[0]}/resend"
        payload = None
    else:
        endpoint = f"{base}/order-completed"
        payload = {"order_ids": args.order_ids}

    print(f"POST {endpoint}")
    try:
        response = httpx.post(endpoint, json=payload, headers=headers, timeout=30)
    except httpx.ConnectError:
        print(
            f"\nERROR: Could not connect to {endpoint}\n"
            "Is the backend running? Start it with:\n"
            "  cd backend && uvicorn app.main:app --reload",
            file=sys.stderr,
        )
        return 1

    _print_response(response)
    return 0 if response.status_code == 202 else 1


def _preview(args: argparse.Namespace) -> int:
    from app.services.watermark import watermark_pdf

    source = Path(args.pdf)
    if not source.is_file():
        print(f"ERROR: {source} not found", file=sys.stderr)
        return 1

    original = source.read_bytes()
    stamped = watermark_pdf(original, args.email)
    if stamped == original:
        print("WARNING: watermarking failed; see log output above", file=sys.stderr)
        return 1

    target = source.with_name(f"{source.stem}.watermarked.pdf")
    target.write_bytes(stamped)
    print(f"Wrote {target} ({len(stamped)} bytes)")
    return 0


# ---------------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------------

def main() -> int:
    load_dotenv(PROJECT_ROOT / ".env")
    load_dotenv(PROJECT_ROOT / "backend" / ".env")

    parser = argparse.ArgumentParser(
        prog="trigger_delivery.py",
        description=textwrap.dedent("""\
            Trigger product delivery on the backend, or preview a watermark locally.
        """),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    commands = parser.add_subparsers(dest="command", required=True)

    trigger = commands.add_parser("trigger", help="POST order ids to the delivery webhook")
    trigger.add_argument("order_ids", nargs="+", metavar="ORDER_ID")
    trigger.add_argument("--url", default="http://localhost:8000", help="Backend base URL")
    trigger.add_argument("--resend", action="store_true", help="Use the single-order resend endpoint")
    trigger.set_defaults(handler=_trigger)

    preview = commands.add_parser("preview", help="Watermark a local PDF")
    preview.add_argument("pdf", help="Path to the PDF to stamp")
    preview.add_argument("--email", default="buyer@example.com", help="License identity to stamp")
    preview.set_defaults(handler=_preview)

    args = parser.parse_args()
    return args.handler(args)


if __name__ == "__main__":
    sys.exit(main())
