"""
Push delivery transports.

- FirebasePushTransport: Firebase Cloud Messaging through firebase_admin
- ExpoPushTransport: Expo push service over HTTPS

Both take already-rendered text and a flat Dict[str, str] data payload and
report per-token outcomes. Every call is bounded by push_timeout_seconds.
"""
import logging
from typing import Dict, List, Optional, Tuple

import httpx

from fieldops.config import settings

logger = logging.getLogger(__name__)

# Firebase Admin SDK - lazy loaded
_firebase_app = None


def _initialize_firebase():
    """Initialize Firebase Admin SDK (lazy loading)"""
    global _firebase_app

    if _firebase_app is not None:
        return True

    if not settings.firebase_configured:
        logger.warning("Firebase credentials not configured. FCM push notifications disabled.")
        return False

    try:
        import firebase_admin
        from firebase_admin import credentials

        if settings.firebase_service_account_path:
            cred = credentials.Certificate(settings.firebase_service_account_path)
        else:
            cred = credentials.Certificate({
                "type": "service_account",
                "project_id": settings.firebase_project_id,
                "client_email": settings.firebase_client_email,
                "private_key": settings.firebase_private_key.replace("\\n", "\n"),
                "token_uri": "https://oauth2.googleapis.com/token",
            })
        _firebase_app = firebase_admin.initialize_app(
            cred, options={"httpTimeout": settings.push_timeout_seconds}
        )
        logger.info("Firebase Admin SDK initialized successfully")
        return True
    except Exception as e:
        logger.error(f"Failed to initialize Firebase Admin SDK: {e}")
        return False


class FirebasePushTransport:
    """FCM delivery. One token uses a single send, several use multicast."""

    def _build_message(self, title: str, body: str, data: Dict[str, str], token: Optional[str] = None,
                       tokens: Optional[List[str]] = None):
        from firebase_admin import messaging

        android = messaging.AndroidConfig(
            priority="high",
            notification=messaging.AndroidNotification(sound="default", channel_id="default"),
        )
        apns = messaging.APNSConfig(
            payload=messaging.APNSPayload(aps=messaging.Aps(sound="default", badge=1))
        )
        notification = messaging.Notification(title=title, body=body)
        if tokens is not None:
            return messaging.MulticastMessage(
                tokens=tokens, notification=notification, data=data, android=android, apns=apns
            )
        return messaging.Message(
            token=token, notification=notification, data=data, android=android, apns=apns
        )

    def send(self, token: str, title: str, body: str, data: Optional[Dict[str, str]] = None) -> bool:
        """
        Send to a single device.

        Returns:
            True if FCM accepted the message, False otherwise
        """
        if not token:
            logger.debug("No FCM token provided, skipping notification")
            return False

        if not _initialize_firebase():
            return False

        try:
            from firebase_admin import messaging

            response = messaging.send(self._build_message(title, body, data or {}, token=token))
            logger.info(f"Push notification sent successfully: {response}")
            return True
        except Exception as e:
            error_str = str(e)
            if "Requested entity was not found" in error_str or "not a valid FCM registration token" in error_str:
                logger.warning(f"FCM token is invalid/unregistered: {token[:20]}...")
            else:
                logger.error(f"Failed to send push notification: {e}")
            return False

    def send_multicast(self, tokens: List[str], title: str, body: str,
                       data: Optional[Dict[str, str]] = None) -> Tuple[int, int]:
        """
        Send to several devices in one call.

        Returns:
            (success_count, failure_count)
        """
        if not tokens:
            return 0, 0

        if not _initialize_firebase():
            return 0, len(tokens)

        from firebase_admin import messaging

        response = messaging.send_each_for_multicast(
            self._build_message(title, body, data or {}, tokens=tokens)
        )
        for index, result in enumerate(response.responses):
            if not result.success:
                logger.warning(f"FCM delivery to {tokens[index][:20]}... failed: {result.exception}")
        logger.info(f"FCM multicast: {response.success_count} sent, {response.failure_count} failed")
        return response.success_count, response.failure_count


class ExpoPushTransport:
    """Expo push service delivery. One HTTP request per batch of tokens."""

    def __init__(self, url: Optional[str] = None, access_token: Optional[str] = None,
                 timeout: Optional[float] = None, client: Optional[httpx.Client] = None):
        self.url = url or settings.expo_push_url
        self.access_token = access_token or settings.expo_access_token
        self.timeout = timeout or settings.push_timeout_seconds
        self.client = client

    def _headers(self) -> Dict[str, str]:
        headers = {
            "Accept": "application/json",
            "Accept-Encoding": "gzip, deflate",
            "Content-Type": "application/json",
        }
        if self.access_token:
            headers["Authorization"] = f"Bearer {self.access_token}"
        return headers

    def send(self, tokens: List[str], title: str, body: str,
             data: Optional[Dict[str, str]] = None) -> List[dict]:
        """
        Returns one receipt per token, in order: {"status": "ok" | "error", "message": ...}.
        Raises httpx.HTTPError when the service itself cannot be reached.
        """
        if not tokens:
            return []

        messages = [
            {
                "to": token,
                "title": title,
                "body": body,
                "data": data or {},
                "sound": "default",
                "priority": "high",
            }
            for token in tokens
        ]

        if self.client is not None:
            response = self.client.post(self.url, json=messages, headers=self._headers(), timeout=self.timeout)
        else:
            with httpx.Client(timeout=self.timeout) as client:
                response = client.post(self.url, json=messages, headers=self._headers())
        response.raise_for_status()

        receipts = response.json().get("data", [])
        if isinstance(receipts, dict):
            receipts = [receipts]
        for token, receipt in zip(tokens, receipts):
            if receipt.get("status") != "ok":
                logger.warning(f"Expo delivery to {token[:30]}... failed: {receipt.get('message')}")
        return receipts
