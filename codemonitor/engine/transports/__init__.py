"""Transport abstraction over the remote service and the local CLI agent."""
from .base import RetryPolicy, Transport
from .local import LaunchSpec, LocalProcessTransport
from .registry import TransportRegistry
from .remote import RemoteTransport
from .remote_client import RemoteClient

__all__ = [
    "LaunchSpec",
    "LocalProcessTransport",
    "RemoteClient",
    "RemoteTransport",
    "RetryPolicy",
    "Transport",
    "TransportRegistry",
]
