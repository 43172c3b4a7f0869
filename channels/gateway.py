"""
Gateway Clients — Adapters between queued Messages and external senders.

Contract: send(message) -> SendResult. A client never raises past send();
timeouts, transport errors and non-2xx responses all come back as
SendResult(ok=False, error=...). No retries here: retry policy belongs to
the queue store's backoff.

Providers:
  - EvolutionGatewayClient  WhatsApp through an Evolution API instance
  - ConsoleGatewayClient    logs the message and reports success (development)
"""
from __future__ import annotations

import abc
import re
import structlog
from typing import Optional

import httpx

from config.logging import mask_phone
from config.settings import GatewayConfig, Settings
from core.errors import TransientDeliveryError
from models.schemas import ChannelType, Message, SendResult

logger = structlog.get_logger()


def normalize_whatsapp_number(phone: str, country_code: str = "55") -> str:
    """Digits only, with the country code prepended when missing."""
    digits = re.sub(r"\D", "", phone or "")
    if digits and country_code and not digits.startswith(country_code):
        digits = country_code + digits
    return digits


class GatewayClient(abc.ABC):
    """Abstract sender for one channel."""

    channel_type: ChannelType = ChannelType.WHATSAPP

    @abc.abstractmethod
    async def send(self, message: Message) -> SendResult:
        ...

    async def close(self) -> None:
        pass


class ConsoleGatewayClient(GatewayClient):
    """Development sender: writes the message to the log and succeeds."""

    def __init__(self, channel_type: ChannelType = ChannelType.WHATSAPP):
        self.channel_type = channel_type
        self.sent: list[Message] = []

    async def send(self, message: Message) -> SendResult:
        self.sent.append(message)
        logger.info("console_gateway_send",
                    message_id=message.id,
                    to=mask_phone(message.recipient_address),
                    length=len(message.body))
        return SendResult(ok=True, provider_message_id=f"console-{message.id}")


class EvolutionGatewayClient(GatewayClient):
    """
    WhatsApp via Evolution API:

        POST {base_url}/message/sendText/{instance}
        apikey: <api_key>
        {"number": "5532999990000", "text": "..."}
    """

    channel_type = ChannelType.WHATSAPP

    def __init__(
        self,
        config: GatewayConfig,
        timeout_seconds: float = 15.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.config = config
        self.timeout_seconds = timeout_seconds
        self._client = client

    @property
    def configured(self) -> bool:
        return bool(self.config.base_url and self.config.api_key and self.config.instance)

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout_seconds, connect=min(5.0, self.timeout_seconds)),
                headers={"Content-Type": "application/json"},
            )
        return self._client

    async def _post_text(self, number: str, text: str) -> dict:
        client = await self._get_client()
        url = f"{self.config.base_url.rstrip('/')}/message/sendText/{self.config.instance}"
        try:
            resp = await client.post(
                url,
                json={"number": number, "text": text},
                headers={"apikey": self.config.api_key},
            )
        except httpx.TimeoutException as e:
            raise TransientDeliveryError(f"gateway timeout: {e}") from e
        except httpx.HTTPError as e:
            raise TransientDeliveryError(f"gateway transport error: {e}") from e

        if resp.status_code >= 400:
            logger.warning("evolution_api_error", status=resp.status_code, body=resp.text[:500])
            raise TransientDeliveryError(f"gateway returned HTTP {resp.status_code}")
        try:
            return resp.json() if resp.content else {}
        except ValueError:
            return {}

    async def send(self, message: Message) -> SendResult:
        if not self.configured:
            return SendResult(ok=False, error="evolution gateway is not configured")

        number = normalize_whatsapp_number(message.recipient_address,
                                           self.config.default_country_code)
        if not number:
            return SendResult(ok=False, error="recipient has no phone digits")

        try:
            data = await self._post_text(number, message.body)
        except TransientDeliveryError as e:
            return SendResult(ok=False, error=str(e))

        provider_id = ""
        key = data.get("key") if isinstance(data, dict) else None
        if isinstance(key, dict):
            provider_id = str(key.get("id", ""))
        logger.info("evolution_message_sent", message_id=message.id, to=mask_phone(number))
        return SendResult(ok=True, provider_message_id=provider_id)

    async def close(self) -> None:
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()


class GatewayRegistry:
    """Routes each message to the client registered for its channel."""

    def __init__(self):
        self._clients: dict[ChannelType, GatewayClient] = {}

    def register(self, client: GatewayClient) -> None:
        self._clients[client.channel_type] = client
        logger.info("gateway_registered", channel=client.channel_type.value,
                    client=type(client).__name__)

    def get(self, channel: ChannelType) -> Optional[GatewayClient]:
        return self._clients.get(channel)

    async def send(self, message: Message) -> SendResult:
        client = self._clients.get(message.channel)
        if client is None:
            return SendResult(ok=False, error=f"no gateway for channel {message.channel.value}")
        return await client.send(message)

    async def close(self) -> None:
        for client in self._clients.values():
            await client.close()


def create_gateway_registry(settings: Settings) -> GatewayRegistry:
    """Factory: build the registry for the configured provider."""
    registry = GatewayRegistry()
    provider = settings.gateway.provider
    if provider == "evolution":
        registry.register(EvolutionGatewayClient(
            settings.gateway,
            timeout_seconds=settings.dispatch.gateway_timeout_seconds,
        ))
    elif provider == "console":
        registry.register(ConsoleGatewayClient())
    else:
        raise ValueError(f"Unknown gateway provider: {provider!r}")
    return registry
