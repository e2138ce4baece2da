"""
NOWPayments API client.

Covers the calls the billing flow needs plus IPN signature checks.
API reference: https://documenter.getpostman.com/view/7907941/S1a32n38
"""

import hashlib
import hmac
import json
import logging
import os
from typing import Any, Dict, Optional

import requests

from deepterm_api.settings import NOWPAYMENTS_ENV, env_flag

logger = logging.getLogger(__name__)

PRODUCTION_API_URL = "https://api.nowpayments.io/v1"
SANDBOX_API_URL = "https://api-sandbox.nowpayments.io/v1"
SIGNATURE_HEADER = "x-nowpayments-sig"

PAYMENT_STATUSES = [
    "pending",
    "waiting",
    "confirming",
    "confirmed",
    "sending",
    "partially_paid",
    "finished",
    "failed",
    "refunded",
    "expired",
]
SUCCESS_STATUSES = {"finished", "confirmed"}
PENDING_STATUSES = {"waiting", "confirming", "sending"}
FAILED_STATUSES = {"failed", "expired", "refunded"}

class NOWPaymentsError(Exception):
    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code

def map_payment_status(external_status: Optional[str]) -> str:
    status = str(external_status or "").strip().lower()
    return status if status in PAYMENT_STATUSES and status != "pending" else "pending"

def is_payment_successful(status: str) -> bool:
    return status in SUCCESS_STATUSES

def is_payment_pending(status: str) -> bool:
    return status in PENDING_STATUSES

def is_payment_failed(status: str) -> bool:
    return status in FAILED_STATUSES

def _js_number(text: str) -> Any:
    """Parse floats the way JSON.parse does so re-serialization matches the signer."""
    value = float(text)
    return int(value) if value.is_integer() and abs(value) < 1e16 else value

def sort_payload(value: Any) -> Any:
    if isinstance(value, dict):
        return {key: sort_payload(value[key]) for key in sorted(value)}
    return value

def compute_ipn_signature(payload: Dict[str, Any], secret: str) -> str:
    message = json.dumps(sort_payload(payload), separators=(",", ":"), ensure_ascii=False)
    return hmac.new(secret.encode("utf-8"), message.encode("utf-8"), hashlib.sha512).hexdigest()

class NOWPaymentsClient:
    def __init__(
        self,
        api_key: Optional[str] = None,
        ipn_secret: Optional[str] = None,
        sandbox: Optional[bool] = None,
        timeout: int = 30
    ):
        self.api_key = api_key if api_key is not None else os.getenv(NOWPAYMENTS_ENV["api_key"], "")
        self.ipn_secret = ipn_secret if ipn_secret is not None else os.getenv(NOWPAYMENTS_ENV["ipn_secret"], "")
        self.sandbox = sandbox if sandbox is not None else env_flag(NOWPAYMENTS_ENV["sandbox"])
        self.timeout = timeout

    @property
    def base_url(self) -> str:
        return SANDBOX_API_URL if self.sandbox else PRODUCTION_API_URL

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    def _request(self, method: str, path: str, *, params: Optional[Dict] = None, payload: Optional[Dict] = None) -> Dict:
        if not self.api_key:
            raise NOWPaymentsError("NOWPayments API key is not configured")
        try:
            response = requests.request(
                method,
                f"{self.base_url}{path}",
                params=params,
                json=payload,
                headers={"x-api-key": self.api_key, "Content-Type": "application/json"},
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            raise NOWPaymentsError(f"NOWPayments request failed: {exc}")

        if response.status_code >= 400:
            try:
                message = response.json().get("message") or response.reason
            except ValueError:
                message = response.reason
            raise NOWPaymentsError(
                f"NOWPayments API error: {response.status_code} - {message}",
                status_code=response.status_code,
            )
        return response.json()

    def get_status(self) -> Dict:
        return self._request("GET", "/status")

    def get_available_currencies(self) -> Dict:
        return self._request("GET", "/currencies")

    def get_full_currencies(self) -> Dict:
        return self._request("GET", "/full-currencies")

    def get_minimum_payment_amount(self, currency_from: str, currency_to: str = "btc") -> Dict:
        return self._request(
            "GET", "/min-amount",
            params={"currency_from": currency_from, "currency_to": currency_to},
        )

    def get_estimated_price(self, amount: float, currency_from: str, currency_to: str) -> Dict:
        return self._request(
            "GET", "/estimate",
            params={"amount": amount, "currency_from": currency_from, "currency_to": currency_to},
        )

    def create_payment(
        self,
        *,
        price_amount: float,
        price_currency: str,
        order_id: str,
        ipn_callback_url: str,
        pay_currency: Optional[str] = None,
        order_description: Optional[str] = None
    ) -> Dict:
        payload = {
            "price_amount": price_amount,
            "price_currency": price_currency,
            "pay_currency": pay_currency,
            "order_id": order_id,
            "order_description": order_description,
            "ipn_callback_url": ipn_callback_url,
        }
        return self._request("POST", "/payment", payload=payload)

    def create_invoice(
        self,
        *,
        price_amount: float,
        price_currency: str,
        order_id: str,
        ipn_callback_url: str,
        success_url: str,
        cancel_url: str,
        pay_currency: Optional[str] = None,
        order_description: Optional[str] = None
    ) -> Dict:
        payload = {
            "price_amount": price_amount,
            "price_currency": price_currency,
            "pay_currency": pay_currency,
            "order_id": order_id,
            "order_description": order_description,
            "ipn_callback_url": ipn_callback_url,
            "success_url": success_url,
            "cancel_url": cancel_url,
            "is_fixed_rate": False,
            "is_fee_paid_by_user": False,
        }
        return self._request("POST", "/invoice", payload=payload)

    def get_payment_status(self, payment_id: str) -> Dict:
        return self._request("GET", f"/payment/{payment_id}")

    def verify_ipn_signature(self, body: bytes, signature: Optional[str]) -> bool:
        if not self.ipn_secret:
            logger.warning("IPN secret is not configured")
            return False
        if not signature:
            return False
        try:
            payload = json.loads(body, parse_float=_js_number)
        except ValueError:
            return False
        if not isinstance(payload, dict):
            return False
        expected = compute_ipn_signature(payload, self.ipn_secret)
        return hmac.compare_digest(expected, signature.strip().lower())
