"""Fleet-wide canary release coordinator."""

__version__ = "0.1.0"
