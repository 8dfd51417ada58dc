"""ONVIF device fleet management: discovery, device registry and command dispatch."""

__version__ = "0.1.0"
