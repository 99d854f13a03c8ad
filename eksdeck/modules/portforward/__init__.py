"""
Port-Forward Module - Black Box Interface

Purpose: Server-wide singleton kubectl port-forward to Grafana
Interface: PortForwardManager.start(), stop(), active
Hidden: Readiness detection, exit watching, pipe draining
"""

from .portforward import PortForwardError, PortForwardManager

__all__ = ["PortForwardError", "PortForwardManager"]
