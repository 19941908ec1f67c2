"""Building blocks for a thick multi-network CNI plugin: shim client, daemon configuration, config generation and watching, plugin execution, and result-cache editing."""

__version__ = "0.1.0"