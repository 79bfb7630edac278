"""Backing inference service: transport, process control, bootstrap and client."""

from .bootstrap import Bootstrapper, BootstrapState
from .client import ServiceClient
from .process import ServiceProcess
from .transport import ServiceTransport

__all__ = [
    "Bootstrapper",
    "BootstrapState",
    "ServiceClient",
    "ServiceProcess",
    "ServiceTransport",
]
