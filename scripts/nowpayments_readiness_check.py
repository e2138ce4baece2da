#!/usr/bin/env python3
"""
Safe NOWPayments readiness check.
Prints only presence/format metadata, never secret values.
"""

from __future__ import annotations

import os
import sys


REQUIRED_KEYS = [
    "NOWPAYMENTS_API_KEY",
    "NOWPAYMENTS_IPN_SECRET",
    "PRODUCTION_URL",
]

OPTIONAL_KEYS = [
    "NOWPAYMENTS_SANDBOX",
    "NEXT_PUBLIC_APP_URL",
    "CRON_SECRET",
    "ADMIN_USERNAME",
    "ADMIN_PASSWORD",
    "ADMIN_JWT_SECRET",
]


def key_format_ok(name: str, value: str) -> bool:
    if not value:
        return False
    if name == "NOWPAYMENTS_API_KEY":
        # Dashboard keys look like XXXXXXX-XXXXXXX-XXXXXXX-XXXXXXX
        return len(value.split("-")) == 4 and all(part.isalnum() for part in value.split("-"))
    if name == "NOWPAYMENTS_IPN_SECRET":
        return len(value) >= 16
    if name in {"PRODUCTION_URL", "NEXT_PUBLIC_APP_URL"}:
        return value.startswith("https://")
    if name == "NOWPAYMENTS_SANDBOX":
        return value.strip().lower() in {"1", "0", "true", "false", "yes", "no", "on", "off"}
    if name in {"CRON_SECRET", "ADMIN_JWT_SECRET"}:
        return len(value) >= 32
    return True


def report_key(key: str) -> tuple[bool, bool]:
    value = os.getenv(key, "")
    present = bool(value)
    format_ok = key_format_ok(key, value) if present else False
    print(f"{key}: present={'yes' if present else 'no'} format_ok={'yes' if format_ok else 'no'} len={len(value)}")
    return present, format_ok


def main() -> int:
    print("NOWPAYMENTS_READINESS_START")
    all_present = True
    all_format_ok = True

    for key in REQUIRED_KEYS:
        present, format_ok = report_key(key)
        if not present:
            all_present = False
        if present and not format_ok:
            all_format_ok = False

    for key in OPTIONAL_KEYS:
        present, format_ok = report_key(key)
        if present and not format_ok:
            all_format_ok = False

    try:
        from deepterm_api.payments import get_payments_readiness
    except ImportError as exc:
        print(f"deepterm_api_importable: no [{exc.__class__.__name__}]")
        return 1

    readiness = get_payments_readiness()
    print(f"sandbox: {'yes' if readiness['sandbox'] else 'no'}")
    print(f"api_base_url: {readiness['api_base_url']}")
    print(f"ready_for_invoices: {'yes' if readiness['ready_for_invoices'] else 'no'}")
    print(f"ready_for_webhook: {'yes' if readiness['ready_for_webhook'] else 'no'}")
    print("NOWPAYMENTS_READINESS_END")

    if readiness["ready_for_invoices"] and readiness["ready_for_webhook"] and all_present and all_format_ok:
        return 0
    return 1


if __name__ == "__main__":
    sys.exit(main())
