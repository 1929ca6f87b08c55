"""Gatekeeper: inbound admission control and outbound retry for ASGI services."""
