"""
Extract encryption, stream and segment metadata from parsed playlists.
"""

from selene.playlist_parser import MasterPlaylist, MediaPlaylist


def extract_encryption_info(playlist: MediaPlaylist) -> dict:
    """
    Extract #EXT-X-KEY information.
    Return: {method, uri, iv} or None
    """
    if playlist.is_primary or playlist.key_info is None:
        return None

    key_info = playlist.key_info
    return {
        'method': key_info.method,
        'uri': key_info.uri,
        'iv': key_info.iv_hex
    }


def extract_stream_info(playlist: MasterPlaylist) -> list:
    """
    Extract bandwidth, resolution, codecs of every variant.
    Return list of metadata dicts, in master order.
    """
    if not playlist.is_primary:
        return None

    streams = []
    for variant in playlist.subplaylists:
        attributes = variant.attributes
        bandwidth = attributes.get('BANDWIDTH')
        streams.append({
            'bandwidth': int(bandwidth) if bandwidth and bandwidth.isdigit() else None,
            'resolution': attributes.get('RESOLUTION'),
            'codecs': attributes.get('CODECS'),
            'uri': variant.url
        })

    return streams


def _track_duration(metadata: str) -> float:
    # '#EXTINF:<duration>,[<title>]'
    try:
        return float(metadata.split(',', 1)[0])
    except ValueError:
        return 0.0


def extract_segment_info(playlist: MediaPlaylist) -> dict:
    """
    Extract segment count, duration, sequence.
    Return: {total_segments, duration, media_sequence, playlist_type}
    """
    if playlist.is_primary:
        return {
            'total_segments': 0,
            'duration': None,
            'media_sequence': None,
            'playlist_type': 'master'
        }

    total_duration = sum(_track_duration(track.metadata) for track in playlist.tracklist)
    media_sequence = playlist.directives.get('#EXT-X-MEDIA-SEQUENCE')

    return {
        'total_segments': len(playlist.tracklist),
        'duration': total_duration,
        'media_sequence': int(media_sequence) if media_sequence and media_sequence.isdigit() else None,
        'playlist_type': playlist.directives.get('#EXT-X-PLAYLIST-TYPE') or 'VOD'
    }
