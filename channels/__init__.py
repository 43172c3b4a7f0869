"""Gateway clients for outbound notification channels."""
from channels.gateway import (
    GatewayClient,
    GatewayRegistry,
    EvolutionGatewayClient,
    ConsoleGatewayClient,
    create_gateway_registry,
    normalize_whatsapp_number,
)

__all__ = [
    "GatewayClient", "GatewayRegistry",
    "EvolutionGatewayClient", "ConsoleGatewayClient",
    "create_gateway_registry", "normalize_whatsapp_number",
]
