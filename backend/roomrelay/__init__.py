"""roomrelay: a room-partitioned real-time chat relay and its client."""

__version__ = "0.1.0"
