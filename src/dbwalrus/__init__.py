"""DBWalrus: SQL data blob storage on Walrus with optional envelope encryption."""

__version__ = "0.1.0"
