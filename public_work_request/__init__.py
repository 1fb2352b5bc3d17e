"""Public work request forms relayed into the CMP ticketing API."""

__version__ = "0.1.0"
