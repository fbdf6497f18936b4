"""Guest upload links with byte quotas, expiry and an admin API."""

__version__ = "1.0.0"
