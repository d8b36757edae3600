"""
Download and decrypt AES-128 encrypted HLS lessons.
"""

__version__ = "1.0.0"
