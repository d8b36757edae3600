"""
Turn a master playlist, its media playlists and a raw key into the list of
segment URLs to download.
"""

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Callable, List, Sequence, Tuple

from selene import playlist_parser
from selene.errors import (
    MissingKeyInfo,
    PlaylistAccessDenied,
    ResolveError,
    VariantIndexOutOfRange,
)
from selene.hex_utils import decode_hex
from selene.playlist_parser import MasterPlaylist, MediaPlaylist
from selene.url_utils import build_segment_url, get_base_url

logger = logging.getLogger(__name__)

ACCESS_DENIED_MARKER = 'AccessDenied'
PLAYLIST_FETCH_ATTEMPTS = 3
INITIAL_FETCH_DELAY = 1.0
VARIANT_FETCH_WORKERS = 4
# AES-128 key and IV size
KEY_MATERIAL_LENGTH = 16

FetchText = Callable[[str], str]


@dataclass(frozen=True)
class VideoManifest:
    key: bytes
    iv: bytes
    segment_urls: Tuple[str, ...]


def resolve(master: MasterPlaylist, media_variants: Sequence[MediaPlaylist],
            variant_index: int, raw_key: bytes) -> VideoManifest:
    """
    Build the VideoManifest for one variant.

    Segment URLs are the first master entry's directory joined with each
    track name, in tracklist order.
    """
    if not isinstance(master, MasterPlaylist):
        raise ResolveError("expected a master playlist to derive the base url from")

    base_url = get_base_url(master.subplaylists[0].url)

    if not 0 <= variant_index < len(media_variants):
        raise VariantIndexOutOfRange(
            f"variant index [{variant_index}] does not exist ({len(media_variants)} available)"
        )
    media = media_variants[variant_index]
    if not isinstance(media, MediaPlaylist):
        raise ResolveError(f"variant [{variant_index}] is not a media playlist")

    if media.key_info is None:
        raise MissingKeyInfo(f"variant [{variant_index}] has no #EXT-X-KEY block")
    iv = decode_hex(media.key_info.iv_hex)
    if len(iv) != KEY_MATERIAL_LENGTH:
        raise ResolveError(
            f"variant [{variant_index}] IV is {len(iv)} bytes (expected {KEY_MATERIAL_LENGTH}): "
            f"[{media.key_info.iv_hex}]"
        )
    if len(raw_key) != KEY_MATERIAL_LENGTH:
        raise ResolveError(f"key is {len(raw_key)} bytes (expected {KEY_MATERIAL_LENGTH})")

    segment_urls = tuple(build_segment_url(base_url, track.segment_name) for track in media.tracklist)
    logger.info("Resolved %d segments under %s", len(segment_urls), base_url)

    return VideoManifest(key=bytes(raw_key), iv=iv, segment_urls=segment_urls)


def _fetch_and_parse(url: str, fetch_text: FetchText):
    return playlist_parser.parse(fetch_playlist_text_with_retry(url, fetch_text))


def fetch_media_variants(master: MasterPlaylist, fetch_text: FetchText,
                         max_workers: int = VARIANT_FETCH_WORKERS) -> List[MediaPlaylist]:
    """
    Fetch and parse every sub-playlist of master concurrently.

    Each fetch gets the access-denied retry. Variants that still fail to
    download or parse, or that are not media
    playlists, are logged and left out. Survivors keep master order.
    """
    urls = [ref.url for ref in master.subplaylists]
    if not urls:
        return []

    with ThreadPoolExecutor(max_workers=min(max_workers, len(urls))) as executor:
        futures = [executor.submit(_fetch_and_parse, url, fetch_text) for url in urls]

    variants = []
    for url, future in zip(urls, futures):
        exc = future.exception()
        if exc is not None:
            logger.warning("Dropping variant %s: %s", url, exc)
            continue
        document = future.result()
        if not isinstance(document, MediaPlaylist):
            logger.warning("Dropping variant %s: not a media playlist", url)
            continue
        variants.append(document)

    logger.info("Retrieved %d of %d variant playlists", len(variants), len(urls))
    return variants


def fetch_playlist_text_with_retry(url: str, fetch_text: FetchText,
                                   attempts: int = PLAYLIST_FETCH_ATTEMPTS) -> str:
    """
    Fetch a playlist, retrying while the server answers with an access-denied body.
    """
    for attempt in range(1, attempts + 1):
        text = fetch_text(url)
        if ACCESS_DENIED_MARKER not in text:
            return text
        if attempt < attempts:
            logger.warning("Access denied for %s, retrying playlist retrieval (%d/%d)", url, attempt, attempts)
    raise PlaylistAccessDenied(f"couldn't get access to playlist after {attempts} tries: {url}")


def resolve_from_url(playlist_url: str, raw_key: bytes, fetch_text: FetchText,
                     variant_index: int = 0, initial_delay: float = INITIAL_FETCH_DELAY) -> VideoManifest:
    """
    Fetch the master playlist at playlist_url and resolve one of its variants.
    """
    # Give the server time to publish the playlist before the first request
    if initial_delay:
        time.sleep(initial_delay)

    text = fetch_playlist_text_with_retry(playlist_url, fetch_text)
    master = playlist_parser.parse(text)
    if not isinstance(master, MasterPlaylist):
        raise ResolveError(f"expected a master playlist at {playlist_url}")

    media_variants = fetch_media_variants(master, fetch_text)
    return resolve(master, media_variants, variant_index, raw_key)
