# chapa.py
# HTTP client for the Chapa payment gateway (https://developer.chapa.co).

import hashlib
import hmac
import logging
import re
import time

import requests

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.chapa.co/v1"


class ChapaError(Exception):
    """Raised when a Chapa call cannot be made or returns an unusable answer."""

    def __init__(self, message, status_code=None, payload=None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.payload = payload


def generate_tx_ref(order_id):
    return f"tx-{order_id}-{int(time.time() * 1000)}"


def normalize_phone(phone):
    """Strips whitespace and turns an international +251 prefix into the local 0 prefix."""
    if not phone:
        return ""
    phone = re.sub(r"\s+", "", str(phone))
    if phone.startswith("+251"):
        return "0" + phone[4:]
    if phone.startswith("251") and len(phone) == 12:
        return "0" + phone[3:]
    return phone


def verify_signature(body, signature, secret):
    """Checks an HMAC-SHA256 hex signature of the raw webhook body."""
    if not signature or not secret:
        return False
    expected = hmac.new(secret.encode('utf-8'), body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, signature.strip().lower())


class ChapaClient:
    def __init__(self, secret_key, base_url=DEFAULT_BASE_URL, timeout=30, currency="ETB", session=None):
        self.secret_key = secret_key
        self.base_url = (base_url or DEFAULT_BASE_URL).rstrip("/")
        self.timeout = timeout
        self.currency = currency
        self.session = session or requests.Session()

    @classmethod
    def from_config(cls, config):
        return cls(
            config.get("CHAPA_SECRET_KEY"),
            base_url=config.get("CHAPA_BASE_URL", DEFAULT_BASE_URL),
            timeout=config.get("CHAPA_TIMEOUT", 30),
            currency=config.get("CHAPA_CURRENCY", "ETB"),
        )

    def _request(self, method, path, **kwargs):
        if not self.secret_key:
            raise ChapaError("Chapa is not configured: CHAPA_SECRET_KEY is missing")

        url = f"{self.base_url}{path}"
        headers = {
            "Authorization": f"Bearer {self.secret_key}",
            "Content-Type": "application/json",
        }
        try:
            response = self.session.request(method, url, headers=headers, timeout=self.timeout, **kwargs)
        except requests.RequestException as e:
            logger.error("Chapa %s %s failed: %s", method, path, e)
            raise ChapaError(f"Could not reach Chapa: {e}") from e

        try:
            body = response.json()
        except ValueError:
            body = {}

        if not response.ok:
            message = body.get("message") if isinstance(body, dict) else None
            logger.error("Chapa %s %s returned %s: %s", method, path, response.status_code, body)
            raise ChapaError(
                f"Chapa request failed: {message or response.reason}",
                status_code=response.status_code,
                payload=body,
            )
        return body

    def initialize(self, *, amount, tx_ref, email, first_name, last_name, phone_number,
                   callback_url, return_url, title, description):
        """Starts a hosted checkout and returns the checkout URL."""
        payload = {
            "amount": f"{float(amount):.2f}",
            "currency": self.currency,
            "email": email,
            "first_name": first_name or "Customer",
            "last_name": last_name or "",
            "phone_number": normalize_phone(phone_number),
            "tx_ref": tx_ref,
            "callback_url": callback_url,
            "return_url": return_url,
            "customization": {
                "title": title,
                "description": description,
            },
        }
        logger.info("Initializing Chapa transaction %s for %s %s", tx_ref, payload["amount"], self.currency)
        body = self._request("POST", "/transaction/initialize", json=payload)

        checkout_url = (body.get("data") or {}).get("checkout_url")
        if not checkout_url:
            raise ChapaError("Invalid response from Chapa: missing checkout_url", payload=body)
        return checkout_url

    def verify(self, tx_ref):
        """Returns the transaction data Chapa holds for tx_ref (status, amount, ...)."""
        body = self._request("GET", f"/transaction/verify/{tx_ref}")
        data = body.get("data")
        if not isinstance(data, dict):
            raise ChapaError("Invalid response from Chapa: missing transaction data", payload=body)
        logger.info("Chapa reports transaction %s as %s", tx_ref, data.get("status"))
        return data

    def refund(self, tx_ref, amount=None, reason=None):
        payload = {}
        if amount is not None:
            payload["amount"] = f"{float(amount):.2f}"
        if reason:
            payload["reason"] = reason
        logger.info("Requesting Chapa refund for %s", tx_ref)
        return self._request("POST", f"/refund/{tx_ref}", json=payload)
