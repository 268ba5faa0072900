"""Rogue Crash: provably fair crash game client, auto-revealer and HTTP API."""

__version__ = "1.0.0"
