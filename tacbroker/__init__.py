"""Asyncio topic broker with REST and MQTT-over-WebSocket access and ADC publishing."""

__version__ = "0.1.0"