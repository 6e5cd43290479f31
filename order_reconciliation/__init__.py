"""Payment and order reconciliation engine for the storefront backend."""

__version__ = "0.1.0"
