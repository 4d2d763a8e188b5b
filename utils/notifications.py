# utils/notifications.py
import logging

import requests

from config import NOTIFICATION_WEBHOOK_URL

logger = logging.getLogger(__name__)


def send_balance_notification(payload: dict):
     if not NOTIFICATION_WEBHOOK_URL:
          logger.info(
               "Notification gateway not configured; %s for student %s not sent",
               payload.get("type"),
               payload.get("student_id"),
          )
          return

     response = requests.post(
          NOTIFICATION_WEBHOOK_URL,
          headers={"Content-Type": "application/json"},
          json=payload,
          timeout=10,
     )
     if response.status_code not in (200, 201, 202):
          raise Exception(f"Notification gateway error: {response.status_code} {response.text}")
