"""Shared FastAPI dependencies"""

from mobilepay_bridge.clients.mobilepay_client import MobilePayClient, get_mobilepay_client
from mobilepay_bridge.services.notification_service import NotificationService


def get_client() -> MobilePayClient:
    return get_mobilepay_client()


def get_notifier() -> NotificationService:
    return NotificationService()
