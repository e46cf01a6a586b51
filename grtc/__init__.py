"""Two-party peer rendezvous over a polled key-value store."""

__version__ = "0.1.0"
