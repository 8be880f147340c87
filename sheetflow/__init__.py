"""SheetFlow schema propagation and step execution core."""

__version__ = "0.1.0"
