"""Audit pods against security rules, record violations and report them in a resource's status."""

__version__ = "0.1.0"

__all__ = ["__version__"]