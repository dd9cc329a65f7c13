"""
Python client for the VisionEra Gateway.

Usage:
    from client import GatewayClient

    with GatewayClient("https://api.visionera.live", token=id_token) as gateway:
        print(gateway.me())
"""

from client.api_client import GatewayClient, GatewayClientError

__all__ = ["GatewayClient", "GatewayClientError"]
