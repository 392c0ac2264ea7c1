"""Gas-sponsored permit swaps and direct universal-router swaps."""

__version__ = "0.1.0"
