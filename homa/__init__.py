"""Sender side of a receiver-driven, message-oriented transport, with string and thread-id helpers."""

__version__ = "0.1.0"