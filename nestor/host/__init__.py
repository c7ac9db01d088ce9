"""Host wiring, startup and shutdown."""

from nestor.host.app import NestorHost
from nestor.host.bootstrap import build_host_components, configure_host_logging

__all__ = ["NestorHost", "build_host_components", "configure_host_logging"]
