"""GCP Service Account Operator."""

__version__ = "0.1.0"
