"""Client and command-line interface."""

from .client import Client

__all__ = ["Client"]
