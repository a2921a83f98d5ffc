from .hub import CacheStatusBroadcaster, to_wire_message  # noqa: F401

__all__ = ["CacheStatusBroadcaster", "to_wire_message"]
