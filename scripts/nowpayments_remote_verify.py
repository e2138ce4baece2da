#!/usr/bin/env python3
"""
Remote NOWPayments verification.
Requires NOWPAYMENTS_API_KEY in env. Calls only read-only endpoints.
Does not print secrets.
"""

from __future__ import annotations

import os
import sys


CHECK_CURRENCIES = ["btc", "eth", "usdttrc20"]


def mask(value: str) -> str:
    if not value:
        return "<missing>"
    if len(value) <= 8:
        return value[0] + "***"
    return value[:6] + "..." + value[-4:]


def main() -> int:
    from deepterm_api.nowpayments import NOWPaymentsClient, NOWPaymentsError

    client = NOWPaymentsClient()
    if not client.configured:
        print("NOWPAYMENTS_API_KEY missing")
        return 1

    failures = 0
    print("NOWPAYMENTS_REMOTE_VERIFY_START")
    print(f"api_key: {mask(client.api_key)}")
    print(f"api_base_url: {client.base_url}")

    try:
        api_status = client.get_status()
        print(f"api_status: ok ({api_status.get('message', 'unknown')})")
    except NOWPaymentsError as exc:
        failures += 1
        print(f"api_status: error [{exc.status_code or exc.__class__.__name__}]")

    try:
        currencies = client.get_available_currencies().get("currencies", [])
        print(f"currencies: ok ({len(currencies)} available)")
    except NOWPaymentsError as exc:
        failures += 1
        currencies = []
        print(f"currencies: error [{exc.status_code or exc.__class__.__name__}]")

    for currency in CHECK_CURRENCIES:
        if currencies and currency not in currencies:
            print(f"min_amount_{currency}: skipped (not enabled)")
            continue
        try:
            minimum = client.get_minimum_payment_amount("usd", currency)
            print(f"min_amount_{currency}: ok ({minimum.get('min_amount')})")
        except NOWPaymentsError as exc:
            failures += 1
            print(f"min_amount_{currency}: error [{exc.status_code or exc.__class__.__name__}]")

    ipn_secret = os.getenv("NOWPAYMENTS_IPN_SECRET", "")
    print(f"ipn_secret_present: {'yes' if ipn_secret else 'no'}")
    print("NOWPAYMENTS_REMOTE_VERIFY_END")
    return 1 if failures else 0


if __name__ == "__main__":
    sys.exit(main())
