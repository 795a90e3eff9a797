"""Long-range compression: a match search over multiplexed, block-compressed streams."""

__version__ = "0.1.0"

__all__ = ["backends", "streamout", "streamin", "hashsearch", "rzip", "runzip"]