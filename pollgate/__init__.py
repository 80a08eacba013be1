"""pollgate: long-poll coordination and rate-limit admission control."""

__version__ = "0.1.0"
