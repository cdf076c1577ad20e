"""A small RPC framework over TCP: codecs, registered services, a concurrent client and timeouts."""

__version__ = "0.1.0"
__all__ = ["codec", "service", "server", "client", "demo"]