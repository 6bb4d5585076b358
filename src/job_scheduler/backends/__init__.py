from .base import DispatchBackend, WakeupHandler
from .in_memory import InMemoryBackend

__all__ = ["DispatchBackend", "WakeupHandler", "InMemoryBackend"]
