"""
Parallel segment downloading, decryption and in-order concatenation.
"""

import enum
import logging
import os
import shutil
import tempfile
from concurrent.futures import FIRST_COMPLETED, ThreadPoolExecutor, wait
from pathlib import Path
from threading import local
from typing import BinaryIO, Callable, List, Optional, Protocol

import requests

from selene.cipher import CipherContext
from selene.errors import PipelineError
from selene.manifest_resolver import VideoManifest
from selene.playlist_parser import get_browser_headers

logger = logging.getLogger(__name__)

DEFAULT_CONCURRENCY = 4
SEGMENT_TIMEOUT = 15
KEY_TIMEOUT = 15

FetchBytes = Callable[[str], bytes]
ProgressCallback = Callable[[int, int], None]


class SegmentState(enum.Enum):
    PENDING = 'pending'
    FETCHING = 'fetching'
    FETCHED = 'fetched'
    DECRYPTING = 'decrypting'
    DECRYPTED = 'decrypted'
    STAGED = 'staged'
    FAILED = 'failed'


class OrderedByteSink(Protocol):
    def write(self, data: bytes) -> object:
        ...


# Thread-local storage for sessions (one session per worker thread)
_thread_local = local()


def _get_thread_session(headers: dict) -> requests.Session:
    """
    Get or create a session for the current thread.
    Reuses connections within the same thread.
    """
    if not hasattr(_thread_local, 'session'):
        _thread_local.session = requests.Session()
        _thread_local.session.headers.update(headers)
    return _thread_local.session


def fetch_segment(segment_url: str) -> bytes:
    """
    Download a single segment as raw bytes. Transport errors propagate.
    """
    session = _get_thread_session(get_browser_headers())
    response = session.get(segment_url, timeout=SEGMENT_TIMEOUT)
    response.raise_for_status()
    return response.content


def fetch_encryption_key(key_uri: str, session: requests.Session = None) -> bytes:
    """
    Download encryption key from URI.
    Return key as bytes.
    """
    session = session or _get_thread_session(get_browser_headers())
    try:
        response = session.get(key_uri, timeout=KEY_TIMEOUT)
        response.raise_for_status()
        return response.content
    except requests.RequestException as e:
        raise RuntimeError(f"Failed to fetch encryption key from {key_uri}: {e}") from e


def _set_state(index: int, state: SegmentState):
    logger.debug("Segment %d: %s", index, state.value)


def _download_and_decrypt_segment(index: int, segment_url: str, cipher: CipherContext,
                                  fetch: FetchBytes) -> BinaryIO:
    """
    Fetch, decrypt and stage one segment.
    Returns the staging slot, positioned at its start.
    """
    _set_state(index, SegmentState.FETCHING)
    segment_data = bytearray(fetch(segment_url))
    _set_state(index, SegmentState.FETCHED)

    _set_state(index, SegmentState.DECRYPTING)
    plaintext = cipher.decrypt(segment_data)
    _set_state(index, SegmentState.DECRYPTED)

    slot = tempfile.TemporaryFile()
    slot.write(plaintext)
    slot.seek(0)
    _set_state(index, SegmentState.STAGED)
    return slot


def _close_slots(slots: List[Optional[BinaryIO]]):
    for slot in slots:
        if slot is not None:
            slot.close()


def run(manifest: VideoManifest, cipher: CipherContext, concurrency: int, sink: OrderedByteSink,
        fetch: FetchBytes = None, progress: ProgressCallback = None):
    """
    Download and decrypt every segment of manifest, then append them to sink
    in manifest order.

    At most `concurrency` segments are in flight at once. The first fetch or
    decrypt failure stops admission and raises PipelineError; sink is only
    written once every segment has been staged, so a failed job writes nothing.
    """
    if concurrency < 1:
        raise ValueError(f"concurrency must be at least 1, got {concurrency}")

    fetch = fetch or fetch_segment
    urls = manifest.segment_urls
    total = len(urls)
    slots: List[Optional[BinaryIO]] = [None] * total

    logger.info("Downloading %d segments with %d workers", total, concurrency)

    executor = ThreadPoolExecutor(max_workers=concurrency)
    in_flight = {}
    try:
        next_index = 0
        completed = 0
        while next_index < total or in_flight:
            while next_index < total and len(in_flight) < concurrency:
                _set_state(next_index, SegmentState.PENDING)
                future = executor.submit(_download_and_decrypt_segment, next_index, urls[next_index], cipher, fetch)
                in_flight[future] = next_index
                next_index += 1

            done, _ = wait(in_flight, return_when=FIRST_COMPLETED)
            for future in sorted(done, key=in_flight.get):
                index = in_flight.pop(future)
                exc = future.exception()
                if exc is not None:
                    _set_state(index, SegmentState.FAILED)
                    logger.error("Failed to download segment %d: %s", index, exc)
                    raise PipelineError(index, urls[index], str(exc)) from exc
                slots[index] = future.result()
                completed += 1
                if progress is not None:
                    progress(completed, total)
    except BaseException:
        executor.shutdown(wait=True, cancel_futures=True)
        for future in in_flight:
            if not future.cancelled() and future.exception() is None:
                future.result().close()
        _close_slots(slots)
        raise
    executor.shutdown(wait=True)

    concatenate_segments(slots, sink)


def concatenate_segments(slots: List[BinaryIO], sink: OrderedByteSink):
    """
    Append staged segments to sink strictly in order, freeing each slot once copied.
    """
    logger.info("Concatenating %d segments", len(slots))
    try:
        for index, slot in enumerate(slots):
            shutil.copyfileobj(slot, sink)
            slot.close()
            slots[index] = None
    finally:
        _close_slots(slots)


class FileSink:
    """
    Ordered byte sink backed by a file.

    Bytes go to '<path>.part', which replaces path when the block exits
    cleanly and is deleted otherwise, so a failed download leaves no output.
    """

    def __init__(self, output_path):
        self.path = Path(output_path)
        self.part_path = self.path.with_name(self.path.name + '.part')
        self.bytes_written = 0
        self._file = None

    def __enter__(self) -> 'FileSink':
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._file = open(self.part_path, 'wb')
        return self

    def write(self, data: bytes) -> int:
        written = self._file.write(data)
        self.bytes_written += len(data)
        return written

    def __exit__(self, exc_type, exc, tb):
        self._file.close()
        if exc_type is None:
            os.replace(self.part_path, self.path)
            logger.info("Output file size: %.2f MB", self.bytes_written / (1024 * 1024))
        else:
            self.part_path.unlink(missing_ok=True)
        return False


def download_video(manifest: VideoManifest, output_path: str, concurrency: int = DEFAULT_CONCURRENCY,
                   fetch: FetchBytes = None, progress: ProgressCallback = None) -> Path:
    """
    Main function: decrypt every segment of manifest into output_path.
    """
    cipher = CipherContext.from_manifest(manifest)
    with FileSink(output_path) as sink:
        run(manifest, cipher, concurrency, sink, fetch=fetch, progress=progress)
    return sink.path
