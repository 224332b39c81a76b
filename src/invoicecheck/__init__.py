"""Black-box probe harness and deployment gate for the invoicing platform."""

__version__ = "0.1.0"

__all__ = ["__version__"]
