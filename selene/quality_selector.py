"""
Choose which variant of a master playlist to download.
"""


def select_variant_index(hq: bool) -> int:
    """
    Index of the media playlist to download.
    The lesson server lists the normal quality variant first and the high
    quality one second.
    """
    return int(hq)
