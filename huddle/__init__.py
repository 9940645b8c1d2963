"""Rendezvous rooms and peer-to-peer media negotiation over WebRTC."""
from __future__ import annotations

import importlib.metadata as importlib_metadata

__version__ = importlib_metadata.version('huddle')
