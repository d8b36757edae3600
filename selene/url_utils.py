"""
URL helpers for locating segments next to their playlist.
"""

from selene.errors import InvalidBaseUrl


def get_base_url(url: str) -> str:
    """
    Drop the last path segment of a playlist URL, keeping the trailing '/'.
    https://host/path/to/manifest.m3u8 -> https://host/path/to/
    """
    head, separator, _ = url.rpartition('/')
    if not separator:
        raise InvalidBaseUrl(f"invalid url to split: [{url}]")
    return f"{head}/"


def build_segment_url(base_url: str, segment_name: str) -> str:
    """
    Join a segment name onto a base URL.
    Segment names are relative to the base, so plain concatenation is used.
    """
    return f"{base_url}{segment_name}"
