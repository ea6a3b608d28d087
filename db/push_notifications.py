"""
Expo push notification sender.

Sending is fire-and-forget: every failure (bad token, network error,
non-2xx response) is logged and swallowed so a notification can never
abort the user action that triggered it.
"""

import asyncio
import logging
import os
from typing import Any, Iterable, Optional

import httpx

from db.document_store import DocumentStore

logger = logging.getLogger(__name__)

_EXPO_PUSH_URL = os.getenv("EXPO_PUSH_URL", "https://exp.host/--/api/v2/push/send")
_EXPO_TOKEN_PREFIX = "ExponentPushToken"
USERS_COLLECTION = "users"


class ExpoPushSender:
    def __init__(self, client: Optional[httpx.AsyncClient] = None, push_url: str = _EXPO_PUSH_URL) -> None:
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=10.0)
        self._push_url = push_url

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def send(
        self,
        target_token: Optional[str],
        title: str,
        body: str,
        data: Optional[dict[str, Any]] = None,
    ) -> bool:
        """
        Send one notification. Returns True if Expo accepted the request.

        Tokens that are missing or not Expo tokens are skipped.
        """
        if not target_token:
            return False
        if not target_token.startswith(_EXPO_TOKEN_PREFIX):
            logger.warning("Skipping invalid Expo push token: %s", target_token)
            return False

        message = {
            "to": target_token,
            "sound": "default",
            "title": title,
            "body": body,
            "data": data or {},
        }
        try:
            response = await self._client.post(
                self._push_url,
                json=message,
                headers={"Accept": "application/json", "Accept-Encoding": "gzip, deflate"},
            )
            response.raise_for_status()
        except httpx.HTTPError as exc:
            logger.error("Error sending push notification: %s", exc)
            return False
        return True


async def get_user_push_token(store: DocumentStore, user_id: str) -> Optional[str]:
    """Return the user's push token if they have notifications enabled, else None."""
    try:
        user = await store.get(USERS_COLLECTION, user_id)
    except Exception as exc:
        logger.error("Error fetching push token for %s: %s", user_id, exc)
        return None
    if user and user.get("notificationsEnabled") and user.get("pushToken"):
        return user["pushToken"]
    return None


async def broadcast_to_group(
    store: DocumentStore,
    sender: ExpoPushSender,
    user_ids: Iterable[str],
    title: str,
    body: str,
    data: Optional[dict[str, Any]] = None,
    exclude_user_id: Optional[str] = None,
) -> int:
    """
    Notify every user in `user_ids` except `exclude_user_id`.

    Returns:
        Number of notifications Expo accepted.
    """
    async def _notify(user_id: str) -> bool:
        token = await get_user_push_token(store, user_id)
        if not token:
            return False
        return await sender.send(token, title, body, data)

    targets = [user_id for user_id in dict.fromkeys(user_ids) if user_id != exclude_user_id]
    results = await asyncio.gather(*(_notify(user_id) for user_id in targets), return_exceptions=True)

    sent = 0
    for user_id, result in zip(targets, results):
        if isinstance(result, BaseException):
            logger.error("Error notifying %s: %s", user_id, result)
        elif result:
            sent += 1
    return sent
