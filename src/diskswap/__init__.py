"""Disk Swap: provision a USB disk as a drop-in replacement boot medium."""

__version__ = "1.0.0"
