"""Tests for gateway clients against httpx.MockTransport."""
import json

import httpx
import pytest

from channels.gateway import (
    ConsoleGatewayClient, EvolutionGatewayClient, GatewayRegistry,
    create_gateway_registry, normalize_whatsapp_number,
)
from config.settings import GatewayConfig
from models.schemas import ChannelType, Message


def _config(**overrides) -> GatewayConfig:
    values = {"provider": "evolution", "base_url": "https://evo.example.org/",
              "api_key": "k3y", "instance": "campaign"}
    values.update(overrides)
    return GatewayConfig(**values)


def _client(handler, config: GatewayConfig = None) -> EvolutionGatewayClient:
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return EvolutionGatewayClient(config or _config(), timeout_seconds=2.0, client=http)


def _message(recipient: str = "(32) 99999-0000", body: str = "Olá!") -> Message:
    return Message(recipient_address=recipient, body=body)


class TestNormalize:
    @pytest.mark.parametrize("raw,expected", [
        ("(32) 99999-0000", "5532999990000"),
        ("+55 32 99999-0000", "5532999990000"),
        ("5532999990000", "5532999990000"),
        ("", ""),
    ])
    def test_normalize_whatsapp_number(self, raw, expected):
        assert normalize_whatsapp_number(raw) == expected


class TestEvolutionGateway:
    @pytest.mark.asyncio
    async def test_send_posts_text(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["apikey"] = request.headers.get("apikey")
            seen["body"] = json.loads(request.content)
            return httpx.Response(201, json={"key": {"id": "ABC123", "fromMe": True}})

        result = await _client(handler).send(_message())

        assert result.ok is True
        assert result.provider_message_id == "ABC123"
        assert seen["url"] == "https://evo.example.org/message/sendText/campaign"
        assert seen["apikey"] == "k3y"
        assert seen["body"] == {"number": "5532999990000", "text": "Olá!"}

    @pytest.mark.asyncio
    async def test_non_2xx_is_failure(self):
        def handler(request):
            return httpx.Response(503, text="instance disconnected")

        result = await _client(handler).send(_message())
        assert result.ok is False
        assert "503" in result.error

    @pytest.mark.asyncio
    async def test_timeout_is_failure(self):
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        result = await _client(handler).send(_message())
        assert result.ok is False
        assert "timeout" in result.error

    @pytest.mark.asyncio
    async def test_transport_error_is_failure(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        result = await _client(handler).send(_message())
        assert result.ok is False

    @pytest.mark.asyncio
    async def test_unconfigured_client_fails_without_calling(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(200, json={})

        result = await _client(handler, _config(api_key="")).send(_message())
        assert result.ok is False
        assert calls == []

    @pytest.mark.asyncio
    async def test_recipient_without_digits(self):
        result = await _client(lambda r: httpx.Response(200)).send(_message(recipient="n/a"))
        assert result.ok is False


class TestRegistry:
    @pytest.mark.asyncio
    async def test_routes_by_channel(self):
        registry = GatewayRegistry()
        console = ConsoleGatewayClient()
        registry.register(console)
        result = await registry.send(_message())
        assert result.ok is True
        assert len(console.sent) == 1

    @pytest.mark.asyncio
    async def test_unknown_channel_is_failure(self):
        registry = GatewayRegistry()
        registry.register(ConsoleGatewayClient())
        msg = Message(channel=ChannelType.EMAIL, recipient_address="a@b.org", body="hi")
        result = await registry.send(msg)
        assert result.ok is False
        assert "email" in result.error

    def test_factory_selects_provider(self, settings):
        settings.gateway = _config()
        registry = create_gateway_registry(settings)
        assert isinstance(registry.get(ChannelType.WHATSAPP), EvolutionGatewayClient)

        settings.gateway.provider = "console"
        registry = create_gateway_registry(settings)
        assert isinstance(registry.get(ChannelType.WHATSAPP), ConsoleGatewayClient)

    def test_factory_rejects_unknown_provider(self, settings):
        settings.gateway.provider = "carrier-pigeon"
        with pytest.raises(ValueError):
            create_gateway_registry(settings)
