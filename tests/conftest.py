"""
Shared playlists, key material and fakes for the test suite.
"""

import pytest

from selene.cipher import CipherContext

KEY = bytes(range(16))
IV = bytes(16)

MASTER_TEXT = """#EXTM3U
#EXT-X-VERSION:3
#EXT-X-STREAM-INF:PROGRAM-ID=1,BANDWIDTH=800000,RESOLUTION=640x360,CODECS="avc1.4d401f,mp4a.40.2"
https://cdn.example.com/lesson/1/nq/index.m3u8
#EXT-X-STREAM-INF:PROGRAM-ID=1,BANDWIDTH=2400000,RESOLUTION=1280x720,CODECS="avc1.4d401f,mp4a.40.2"
https://cdn.example.com/lesson/1/hq/index.m3u8
"""


def build_media_text(segment_names, iv_hex='0x00000000000000000000000000000000', endlist=True):
    lines = [
        '#EXTM3U',
        '#EXT-X-VERSION:3',
        '#EXT-X-TARGETDURATION:10',
        '#EXT-X-MEDIA-SEQUENCE:0',
        '#EXT-X-PLAYLIST-TYPE:VOD',
    ]
    if iv_hex is not None:
        lines.append(f'#EXT-X-KEY:METHOD=AES-128,URI="https://www.example.com/key.php",IV={iv_hex}')
    for name in segment_names:
        lines.append('#EXTINF:10.0,')
        lines.append(name)
    if endlist:
        lines.append('#EXT-X-ENDLIST')
    return '\n'.join(lines) + '\n'


@pytest.fixture
def key():
    return KEY


@pytest.fixture
def iv():
    return IV


@pytest.fixture
def cipher():
    return CipherContext(KEY, IV)


@pytest.fixture
def master_text():
    return MASTER_TEXT


@pytest.fixture
def media_text():
    return """#EXTM3U
#EXT-X-VERSION:3
#EXT-X-TARGETDURATION:10
#EXT-X-MEDIA-SEQUENCE:0
#EXT-X-PLAYLIST-TYPE:VOD
#EXT-X-KEY:METHOD=AES-128,URI="https://www.example.com/key.php",IV=0x00000000000000000000000000000000
#EXTINF:10.0,
seg0.ts
#EXTINF:4.5,
seg1.ts
#EXT-X-ENDLIST
"""


@pytest.fixture
def make_media_text():
    return build_media_text
