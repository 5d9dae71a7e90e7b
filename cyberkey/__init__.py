"""CyberKey: API key expiry and suspicious activity monitoring."""

__version__ = "0.1.0"
