"""Channel adapters: one per chat platform, all behind ChannelAdapter."""

from .base import ChannelAdapter, MemoryAdapter, MessageHandler

__all__ = ["ChannelAdapter", "MemoryAdapter", "MessageHandler"]
