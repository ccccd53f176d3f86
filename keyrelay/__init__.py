"""keyrelay: a credential-rotating reverse proxy for a single upstream HTTP API."""

__version__ = "1.0.0"
