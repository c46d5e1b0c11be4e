"""Bulk exam-question ingestion: page rasters in, backend question payloads out."""

__version__ = "0.1.0"
