"""Microsoft 365 tenant administration tools."""

__version__ = "0.1.0"
