"""Task lifecycle and escrow settlement service."""

__version__ = "0.1.0"
