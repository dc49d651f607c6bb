"""tsbridge package root."""

from tsbridge.exceptions import NeverThrown
from tsbridge.invariants import never

__all__ = ["__version__", "NeverThrown", "never"]

__version__ = "0.1.0"
