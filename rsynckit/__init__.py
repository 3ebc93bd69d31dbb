"""Pieces of the rsync sender (wire integers, checksum headers, file lists) and the daemon inband exchange."""

__version__ = "0.1.0"

__all__ = ["daemon", "fileio", "flist", "source", "sumhead", "token"]