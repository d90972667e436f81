"""Encrypted storage, incremental encrypted backups, messaging primitives and logging for MPC nodes."""

__version__ = "0.1.0"

__all__ = [
    "logger",
    "database",
    "backup",
    "kvstore",
    "pubsub",
    "p2p",
    "broker",
    "message_queue",
]