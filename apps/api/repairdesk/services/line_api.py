"""LINE Messaging API client and webhook signature verification."""

from __future__ import annotations

import base64
import hashlib
import hmac
import logging
from typing import Any

import httpx

from repairdesk.core.config import settings

logger = logging.getLogger(__name__)

HTTPX_TIMEOUT = httpx.Timeout(10.0, connect=5.0)
MULTICAST_MAX_RECIPIENTS = 500


class LineApiError(Exception):
    """LINE API returned a non-2xx response or could not be reached."""

    def __init__(self, message: str, *, status_code: int | None = None, body: str | None = None):
        self.status_code = status_code
        self.body = body
        super().__init__(message)


def verify_signature(body: bytes, signature: str | None, secret: str | None = None) -> bool:
    """
    Verify the ``x-line-signature`` header.

    LINE signs the raw request body with HMAC-SHA256 keyed by the channel
    secret and base64-encodes the digest. ``body`` must be the exact bytes
    received; re-serialized JSON will not match.
    """
    channel_secret = settings.LINE_CHANNEL_SECRET if secret is None else secret
    if not channel_secret or not signature:
        return False
    digest = hmac.new(channel_secret.encode("utf-8"), body, hashlib.sha256).digest()
    expected = base64.b64encode(digest)
    # Headers arrive latin-1 decoded; compare bytes so stray non-ASCII is a mismatch
    return hmac.compare_digest(expected, signature.encode("utf-8", "surrogateescape"))


def chunk_recipients(to: list[str], size: int | None = None) -> list[list[str]]:
    """Split recipients into multicast-sized batches."""
    size = size or MULTICAST_MAX_RECIPIENTS
    return [to[start:start + size] for start in range(0, len(to), size)]


class LineMessagingClient:
    """
    Thin async wrapper over the LINE Messaging API.

    Built once from settings and injected into the dispatcher and webhook
    router. Holds no per-request state.
    """

    def __init__(
        self,
        access_token: str,
        *,
        base_url: str = "https://api.line.me",
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._access_token = access_token
        self._base_url = base_url.rstrip("/")
        self._transport = transport

    @property
    def configured(self) -> bool:
        return bool(self._access_token)

    async def _request(self, method: str, path: str, payload: dict | None = None) -> dict[str, Any]:
        if not self._access_token:
            raise LineApiError("LINE access token is not configured")
        headers = {"Authorization": f"Bearer {self._access_token}"}
        try:
            async with httpx.AsyncClient(
                base_url=self._base_url, timeout=HTTPX_TIMEOUT, transport=self._transport
            ) as client:
                response = await client.request(method, path, json=payload, headers=headers)
        except httpx.RequestError as exc:
            raise LineApiError(f"LINE API request failed: {exc}") from exc

        if response.status_code >= 400:
            body = response.text[:500]
            logger.warning("LINE API %s %s returned %s", method, path, response.status_code)
            raise LineApiError(
                f"LINE API error {response.status_code}: {body}",
                status_code=response.status_code,
                body=body,
            )
        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError:
            return {}

    async def push_message(self, to: str, messages: list[dict]) -> None:
        await self._request("POST", "/v2/bot/message/push", {"to": to, "messages": messages})

    async def reply_message(self, reply_token: str, messages: list[dict]) -> None:
        await self._request(
            "POST", "/v2/bot/message/reply", {"replyToken": reply_token, "messages": messages}
        )

    async def multicast(self, to: list[str], messages: list[dict]) -> None:
        """Send to many users; split into chunks of the platform's recipient limit."""
        for chunk in chunk_recipients(to):
            await self._request(
                "POST", "/v2/bot/message/multicast", {"to": chunk, "messages": messages}
            )

    async def reply_or_push(
        self, reply_token: str | None, user_id: str, messages: list[dict]
    ) -> None:
        """Reply when the event carried a token, otherwise push to the user."""
        if reply_token:
            await self.reply_message(reply_token, messages)
        else:
            await self.push_message(user_id, messages)

    async def link_rich_menu(self, user_id: str, rich_menu_id: str) -> None:
        await self._request("POST", f"/v2/bot/user/{user_id}/richmenu/{rich_menu_id}")

    async def get_profile(self, user_id: str) -> dict[str, Any]:
        return await self._request("GET", f"/v2/bot/profile/{user_id}")

    async def get_bot_info(self) -> dict[str, Any]:
        return await self._request("GET", "/v2/bot/info")


def build_line_client() -> LineMessagingClient:
    return LineMessagingClient(settings.LINE_ACCESS_TOKEN, base_url=settings.LINE_API_BASE_URL)
