"""Game outcome & settlement engine for a virtual-currency casino."""

__version__ = "1.0.0"
