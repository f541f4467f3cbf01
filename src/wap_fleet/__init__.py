"""Declarative rollout of RouterOS WiFi access-point fleets."""

__version__ = "0.1.0"
