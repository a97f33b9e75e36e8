import logging
from typing import Protocol

import httpx

from shiftbook.errors import DeliveryFailure
from shiftbook.models import DeliveryOutcome

logger = logging.getLogger(__name__)

LINE_API_BASE = "https://api.line.me"
PUSH_PATH = "/v2/bot/message/push"


class Messenger(Protocol):
    async def push_text(self, target: str, text: str) -> DeliveryOutcome: ...


class LinePushClient:
    """
    Sends single text messages through the LINE Messaging API push endpoint.

    Failures never raise out of push_text; they come back as a failed
    DeliveryOutcome carrying the error text.
    """

    def __init__(
        self,
        channel_access_token: str,
        *,
        base_url: str = LINE_API_BASE,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._token = channel_access_token
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._transport = transport

    async def push_text(self, target: str, text: str) -> DeliveryOutcome:
        try:
            await self._post(target, text)
        except DeliveryFailure as e:
            logger.warning(f"LINE push to {target} failed: {e.error}")
            return DeliveryOutcome.failed(e.error)
        return DeliveryOutcome.ok(
            f"Message sent successfully to LINE user: {target}"
        )

    async def _post(self, target: str, text: str) -> None:
        payload = {"to": target, "messages": [{"type": "text", "text": text}]}
        async with httpx.AsyncClient(
            base_url=self._base_url,
            timeout=self._timeout,
            transport=self._transport,
        ) as client:
            try:
                response = await client.post(
                    PUSH_PATH,
                    json=payload,
                    headers={"Authorization": f"Bearer {self._token}"},
                )
            except httpx.HTTPError as e:
                raise DeliveryFailure(target, str(e) or type(e).__name__) from e

        if response.is_error:
            error = (
                f"LINE API Error: {response.status_code} - "
                f"{response.reason_phrase}"
            )
            try:
                body = response.json()
            except ValueError:
                body = None
            detail = body.get("message") if isinstance(body, dict) else None
            if detail:
                error += f" ({detail})"
            raise DeliveryFailure(target, error)
