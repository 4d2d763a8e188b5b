# utils/paymaya.py
import base64
import hashlib
import hmac
import logging
from typing import Optional

import requests

import config

logger = logging.getLogger(__name__)


def is_configured() -> bool:
     return bool(config.PAYMAYA_SECRET_KEY and config.PAYMAYA_BASE_URL_SANDBOX)


def _paymaya_headers():
     auth = base64.b64encode(f"{config.PAYMAYA_SECRET_KEY}:".encode()).decode()
     return {
          "Content-Type": "application/json",
          "Authorization": f"Basic {auth}"
     }


def create_checkout(recharge) -> dict:
     """
     Open a PayMaya checkout for a PENDING recharge.

     Returns the provider response ({"checkoutId": ..., "redirectUrl": ...}).
     """
     payload = {
          "totalAmount": {
               "value": float(recharge.amount),
               "currency": recharge.currency
          },
          "items": [
               {
                    "name": f"{recharge.tickets_credited} lesson ticket(s)",
                    "quantity": 1,
                    "totalAmount": {"value": float(recharge.amount)}
               }
          ],
          "requestReferenceNumber": recharge.reference,
          "redirectUrl": {
               "success": config.PAYMENT_SUCCESS_URL,
               "failure": config.PAYMENT_FAILURE_URL,
               "cancel": config.PAYMENT_CANCEL_URL
          }
     }

     response = requests.post(
          f"{config.PAYMAYA_BASE_URL_SANDBOX}/checkout/v1/checkouts",
          json=payload,
          headers=_paymaya_headers(),
          timeout=15,
     )
     if response.status_code not in (200, 201):
          raise Exception(f"PayMaya checkout error: {response.status_code} {response.text}")
     return response.json()


def compute_signature(body: bytes, secret: str) -> str:
     return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def verify_webhook_signature(body: bytes, signature: Optional[str]) -> bool:
     """
     Check the HMAC-SHA256 signature of a webhook body.

     Verification is skipped (True) when no webhook secret is configured.
     """
     if not config.PAYMAYA_WEBHOOK_SECRET:
          return True
     if not signature:
          return False
     expected = compute_signature(body, config.PAYMAYA_WEBHOOK_SECRET)
     return hmac.compare_digest(expected, signature.strip().lower())
