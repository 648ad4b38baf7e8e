import base64
import json
import logging
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional

import httpx

logger = logging.getLogger(__name__)

TELNYX_CALLS_URL = "https://api.telnyx.com/v2/calls"


@dataclass
class PushResult:
    success_count: int = 0
    failure_count: int = 0


@dataclass
class CallResult:
    ok: bool
    call_control_id: Optional[str] = None
    error: Optional[str] = None


class WebhookPushService:
    """
    Multicast push through an HTTP push gateway.

    The gateway receives {tokens, notification, data, android, apns} and
    answers with {successCount, failureCount}.
    """

    def __init__(self, url: str, timeout: float = 8.0):
        self.url = url
        self.timeout = timeout

    async def send(self, tokens: List[str], notification: Dict[str, str], data: Dict[str, str]) -> PushResult:
        body = {
            "tokens": tokens,
            "notification": notification,
            "data": data,
            "android": {"priority": "high"},
            "apns": {"headers": {"apns-priority": "10"}, "payload": {"aps": {"sound": "default"}}},
        }
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            response = await client.post(self.url, json=body)
        response.raise_for_status()
        payload = response.json()
        return PushResult(
            success_count=int(payload.get("successCount", 0)),
            failure_count=int(payload.get("failureCount", 0)),
        )


class NotificationDispatcher:
    """Best-effort push to a resolved recipient's registered devices."""

    def __init__(self, store, push_service=None):
        self.store = store
        self.push_service = push_service

    async def collect_device_tokens(self, uid: str) -> List[str]:
        if not uid:
            return []
        try:
            devices = await self.store.find(f"users/{uid}/devices")
        except Exception as e:
            logger.warning(f"Device lookup failed for {uid}: {e}")
            return []
        tokens: List[str] = []
        for device in devices:
            if device.get("disabled"):
                continue
            token = str(device.get("fcmToken") or device.get("token") or "").strip()
            if token and token not in tokens:
                tokens.append(token)
        return tokens

    async def collect_tokens_for(self, uids: Iterable[str]) -> List[str]:
        tokens: List[str] = []
        for uid in uids:
            for token in await self.collect_device_tokens(uid):
                if token not in tokens:
                    tokens.append(token)
        return tokens

    async def dispatch(self, tokens: List[str], title: str, body: str, data: Dict[str, str]) -> PushResult:
        unique = list(dict.fromkeys(t for t in tokens if t))
        if not unique:
            return PushResult()
        if self.push_service is None:
            logger.info("Push service not configured; skipping notification")
            return PushResult(failure_count=len(unique))
        try:
            return await self.push_service.send(
                unique,
                {"title": title, "body": body},
                {k: str(v) for k, v in data.items()},
            )
        except Exception as e:
            logger.warning(f"Push dispatch failed for {len(unique)} tokens: {e}")
            return PushResult(failure_count=len(unique))


class TelnyxTelephonyService:
    def __init__(self, api_key: str, connection_id: str, from_number: str, timeout: float = 10.0):
        self.api_key = api_key
        self.connection_id = connection_id
        self.from_number = from_number
        self.timeout = timeout

    @property
    def configured(self) -> bool:
        return bool(self.api_key and self.connection_id and self.from_number)

    async def call(self, to_number: str, context: Optional[Dict[str, str]] = None) -> CallResult:
        if not self.configured:
            return CallResult(ok=False, error="telephony_not_configured")
        body = {
            "connection_id": self.connection_id,
            "to": to_number,
            "from": self.from_number,
        }
        if context:
            # Telnyx echoes client_state back on webhooks; it must be base64.
            body["client_state"] = base64.b64encode(json.dumps(context).encode()).decode()
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(
                    TELNYX_CALLS_URL,
                    json=body,
                    headers={"Authorization": f"Bearer {self.api_key}"},
                )
        except httpx.HTTPError as e:
            logger.error(f"Telnyx call request failed: {e}")
            return CallResult(ok=False, error="telephony_unreachable")
        if not 200 <= response.status_code < 300:
            logger.error(f"Telnyx call rejected ({response.status_code}): {(response.text or '')[:240]}")
            return CallResult(ok=False, error=f"telephony_error_{response.status_code}")
        data = (response.json() or {}).get("data") or {}
        return CallResult(ok=True, call_control_id=data.get("call_control_id"))
