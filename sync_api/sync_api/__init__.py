"""HTTP service for offline-first GST invoice synchronisation."""

__version__ = "0.1.0"
