"""Order and payment settlement core."""

__version__ = "1.0.0"
