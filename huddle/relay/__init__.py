"""Relay server and client implementations."""
from __future__ import annotations

from huddle.relay.client import RelayClient
from huddle.relay.server import RelayServer
