"""CryptoPulse: crypto price ingestion and top-mover analytics."""

__version__ = "0.1.0"
