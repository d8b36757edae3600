"""
Fetch and parse m3u8 playlists with zstd decompression support.

The parser understands the subset of HLS used by the lesson server:
variant references on master playlists, a single key block and a track
listing on media playlists. Every other directive is kept verbatim.
"""

import logging
import shlex
from dataclasses import dataclass, field
from typing import Dict, Optional, Tuple, Union

import requests
import zstandard as zstd

from selene.errors import (
    ClassificationError,
    MalformedAttributeList,
    MalformedDirective,
    MissingHeader,
    UnexpectedEof,
)

logger = logging.getLogger(__name__)

HEADER_TAG = '#EXTM3U'
DIRECTIVE_PREFIX = '#'
DIRECTIVE_SEPARATOR = ':'
STREAM_INF_TAG = '#EXT-X-STREAM-INF:'
KEY_TAG = '#EXT-X-KEY:'
TRACK_INF_TAG = '#EXTINF:'
END_LIST_TAG = '#EXT-X-ENDLIST'

REQUEST_TIMEOUT = 30
ZSTD_MAGIC = b'\x28\xb5\x2f\xfd'
ZSTD_MAX_OUTPUT = 10 * 1024 * 1024


@dataclass(frozen=True)
class TrackEntry:
    metadata: str
    segment_name: str


@dataclass(frozen=True)
class VariantRef:
    url: str
    attributes: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class KeyInfo:
    method: str = ''
    uri: str = ''
    iv_hex: str = ''


@dataclass(frozen=True)
class MasterPlaylist:
    """Playlist whose entries point at one media playlist per quality."""
    directives: Dict[str, str]
    subplaylists: Tuple[VariantRef, ...]

    @property
    def is_primary(self) -> bool:
        return True

    @property
    def tracklist(self) -> Tuple[TrackEntry, ...]:
        return ()

    @property
    def key_info(self) -> Optional[KeyInfo]:
        return None


@dataclass(frozen=True)
class MediaPlaylist:
    """Playlist listing the playable segments of one variant."""
    directives: Dict[str, str]
    tracklist: Tuple[TrackEntry, ...]
    key_info: Optional[KeyInfo] = None

    @property
    def is_primary(self) -> bool:
        return False

    @property
    def subplaylists(self) -> Tuple[VariantRef, ...]:
        return ()


PlaylistDocument = Union[MasterPlaylist, MediaPlaylist]


def get_browser_headers() -> dict:
    """
    Get browser-like headers for playlist, key and segment requests.
    """
    return {
        'accept': '*/*',
        'accept-encoding': 'gzip, deflate, br, zstd',
        'accept-language': 'en-US,en;q=0.9',
        'cache-control': 'no-cache',
        'pragma': 'no-cache',
        'user-agent': 'Mozilla/5.0 (Windows NT 6.1; WOW64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/86.0.4230.1 Safari/537.36'
    }


def decompress_zstd(raw_bytes: bytes) -> bytes:
    """
    Decompress zstd-compressed content.
    Bodies without the zstd magic bytes are returned unchanged.
    """
    if len(raw_bytes) < 4 or raw_bytes[:4] != ZSTD_MAGIC:
        return raw_bytes

    try:
        dctx = zstd.ZstdDecompressor()
        return dctx.decompress(raw_bytes, max_output_size=ZSTD_MAX_OUTPUT)
    except zstd.ZstdError as e:
        # Frames without a content size need the streaming reader
        try:
            dctx = zstd.ZstdDecompressor()
            decompressed = bytearray()
            with dctx.stream_reader(raw_bytes) as reader:
                while True:
                    chunk = reader.read(8192)
                    if not chunk:
                        break
                    decompressed.extend(chunk)
            return bytes(decompressed)
        except zstd.ZstdError as e2:
            raise ValueError(f"Failed to decompress zstd content: {e}, stream failed: {e2}")


def fetch_playlist_text(url: str, session: requests.Session = None) -> str:
    """
    Fetch playlist text, undoing zstd compression when the server applied it.
    """
    getter = session.get if session is not None else requests.get
    response = getter(url, headers=get_browser_headers(), timeout=REQUEST_TIMEOUT)
    response.raise_for_status()

    # Disable automatic encoding to get raw bytes
    response.encoding = None
    raw_bytes = response.content

    try:
        content = decompress_zstd(raw_bytes).decode('utf-8')
    except (ValueError, UnicodeDecodeError):
        content = raw_bytes.decode('utf-8', errors='replace')
    return content


def read_directive(line: str, line_number: int = None) -> Tuple[str, str]:
    """
    Split '#KEY:value' on the first separator.
    """
    key, separator, value = line.partition(DIRECTIVE_SEPARATOR)
    if not separator:
        raise MalformedDirective(f"directive value not found: [{line}]", line_number)
    return key, value


def parse_attribute_list(value: str, line_number: int = None) -> Dict[str, str]:
    """
    Parse a comma separated KEY=value list. Double quotes protect commas
    inside a value and are stripped. Items without '=' are ignored.
    """
    lexer = shlex.shlex(value, posix=True)
    lexer.whitespace = ','
    lexer.whitespace_split = True
    lexer.commenters = ''
    lexer.quotes = '"'
    lexer.escape = ''
    try:
        items = list(lexer)
    except ValueError as e:
        raise MalformedAttributeList(f"could not parse attribute list [{value}]: {e}", line_number)

    if not items:
        raise MalformedAttributeList(f"empty attribute list [{value}]", line_number)

    attributes = {}
    for item in items:
        key, separator, attr_value = item.partition('=')
        if separator:
            attributes[key.strip()] = attr_value
    return attributes


def parse_key_info(value: str, line_number: int = None) -> KeyInfo:
    fields = {'method': '', 'uri': '', 'iv': ''}
    for key, attr_value in parse_attribute_list(value, line_number).items():
        key = key.lower()
        if key in fields:
            fields[key] = attr_value
    return KeyInfo(method=fields['method'], uri=fields['uri'], iv_hex=fields['iv'])


def parse(text: str) -> PlaylistDocument:
    """
    Parse raw playlist text into a MasterPlaylist or a MediaPlaylist.

    Raises a ParseError subclass on malformed input. A playlist listing
    both variants and segments, or neither, is rejected.
    """
    lines = text.splitlines()
    if not lines or lines[0].strip() != HEADER_TAG:
        raise MissingHeader("directive header not found", 1)

    directives = {}
    tracklist = []
    subplaylists = []
    key_info = None

    def continuation(index: int, what: str) -> str:
        if index >= len(lines):
            raise UnexpectedEof(f"unexpected eof parsing {what}", index)
        return lines[index].strip()

    i = 1
    while i < len(lines):
        line = lines[i].strip()
        line_number = i + 1
        i += 1

        if line.startswith(STREAM_INF_TAG):
            _, value = read_directive(line, line_number)
            url = continuation(i, 'sources listing')
            i += 1
            subplaylists.append(VariantRef(url=url, attributes=parse_attribute_list(value, line_number)))
        elif line.startswith(KEY_TAG):
            _, value = read_directive(line, line_number)
            if key_info is not None:
                logger.debug("Replacing earlier key block at line %d", line_number)
            key_info = parse_key_info(value, line_number)
        elif line.startswith(TRACK_INF_TAG):
            _, metadata = read_directive(line, line_number)
            name = continuation(i, 'track listing')
            i += 1
            tracklist.append(TrackEntry(metadata=metadata, segment_name=name))
        elif line == END_LIST_TAG:
            break
        elif line.startswith(DIRECTIVE_PREFIX):
            key, value = read_directive(line, line_number)
            directives[key] = value
        elif line:
            logger.warning("Unknown line detected: [%s]", line)

    if subplaylists and not tracklist:
        return MasterPlaylist(directives=directives, subplaylists=tuple(subplaylists))
    if tracklist and not subplaylists:
        return MediaPlaylist(directives=directives, tracklist=tuple(tracklist), key_info=key_info)
    raise ClassificationError(
        f"invalid m3u file: {len(subplaylists)} variants and {len(tracklist)} tracks"
    )


def validate_playlist(playlist: PlaylistDocument) -> bool:
    """
    Check that a parsed playlist has entries of its own kind.
    """
    if playlist is None:
        return False
    if playlist.is_primary:
        return bool(playlist.subplaylists)
    return bool(playlist.tracklist)


def get_playlist_type(playlist: PlaylistDocument) -> str:
    """
    Return 'master' or 'media'.
    """
    if playlist.is_primary:
        return 'master'
    return 'media'
