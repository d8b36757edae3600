import io
import os
import tempfile
import threading
import time

import pytest
import requests

from selene import manifest_resolver, playlist_parser, segment_downloader
from selene.errors import InvalidCiphertextLength, PipelineError
from selene.manifest_resolver import VideoManifest
from selene.segment_downloader import FileSink

SEGMENT_COUNT = 6


def make_segments(cipher, count):
    urls = tuple(f'https://cdn.example.com/lesson/seg{i}.ts' for i in range(count))
    plaintexts = [f'segment {i} '.encode() * (i + 3) for i in range(count)]
    bodies = {url: cipher.encrypt(text) for url, text in zip(urls, plaintexts)}
    return urls, plaintexts, bodies


class RecordingFetcher:
    """
    Serves encrypted bodies, sleeping longer for earlier segments so that
    completion order is the reverse of manifest order.
    """

    def __init__(self, bodies, urls, delay=0.01, fail_at=None):
        self.bodies = bodies
        self.urls = list(urls)
        self.delay = delay
        self.fail_at = fail_at
        self.lock = threading.Lock()
        self.in_flight = 0
        self.max_in_flight = 0
        self.calls = []

    def __call__(self, url):
        index = self.urls.index(url)
        with self.lock:
            self.calls.append(index)
            self.in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            time.sleep(self.delay * (len(self.urls) - index))
            if index == self.fail_at:
                raise requests.ConnectionError(f'connection reset for {url}')
            return self.bodies[url]
        finally:
            with self.lock:
                self.in_flight -= 1


@pytest.mark.parametrize('concurrency', range(1, SEGMENT_COUNT + 1))
def test_output_follows_manifest_order(cipher, key, iv, concurrency):
    urls, plaintexts, bodies = make_segments(cipher, SEGMENT_COUNT)
    manifest = VideoManifest(key=key, iv=iv, segment_urls=urls)
    fetcher = RecordingFetcher(bodies, urls)
    sink = io.BytesIO()

    segment_downloader.run(manifest, cipher, concurrency, sink, fetch=fetcher)

    assert sink.getvalue() == b''.join(plaintexts)
    assert fetcher.max_in_flight <= concurrency


def test_fetch_failure_aborts_job(cipher, key, iv):
    urls, _, bodies = make_segments(cipher, SEGMENT_COUNT)
    manifest = VideoManifest(key=key, iv=iv, segment_urls=urls)
    sink = io.BytesIO()

    with pytest.raises(PipelineError) as excinfo:
        segment_downloader.run(manifest, cipher, 3, sink, fetch=RecordingFetcher(bodies, urls, fail_at=3))

    assert excinfo.value.index == 3
    assert excinfo.value.url == urls[3]
    assert isinstance(excinfo.value.__cause__, requests.ConnectionError)
    assert sink.getvalue() == b''


def test_decrypt_failure_aborts_job(cipher, key, iv):
    urls, _, bodies = make_segments(cipher, 3)
    bodies[urls[1]] = bodies[urls[1]][:-1]
    manifest = VideoManifest(key=key, iv=iv, segment_urls=urls)
    sink = io.BytesIO()

    with pytest.raises(PipelineError) as excinfo:
        segment_downloader.run(manifest, cipher, 2, sink, fetch=bodies.__getitem__)

    assert excinfo.value.index == 1
    assert isinstance(excinfo.value.__cause__, InvalidCiphertextLength)
    assert sink.getvalue() == b''


def test_no_segments_admitted_after_failure(cipher, key, iv):
    urls, _, bodies = make_segments(cipher, 10)
    manifest = VideoManifest(key=key, iv=iv, segment_urls=urls)
    fetcher = RecordingFetcher(bodies, urls, delay=0, fail_at=1)

    with pytest.raises(PipelineError):
        segment_downloader.run(manifest, cipher, 1, io.BytesIO(), fetch=fetcher)

    assert fetcher.calls == [0, 1]


def test_progress_reports_every_segment(cipher, key, iv):
    urls, _, bodies = make_segments(cipher, 4)
    manifest = VideoManifest(key=key, iv=iv, segment_urls=urls)
    reports = []

    segment_downloader.run(manifest, cipher, 2, io.BytesIO(), fetch=bodies.__getitem__,
                           progress=lambda done, total: reports.append((done, total)))

    assert reports == [(1, 4), (2, 4), (3, 4), (4, 4)]


def test_empty_manifest_writes_nothing(cipher, key, iv):
    sink = io.BytesIO()

    segment_downloader.run(VideoManifest(key=key, iv=iv, segment_urls=()), cipher, 4, sink, fetch=None)

    assert sink.getvalue() == b''


def test_concurrency_must_be_positive(cipher, key, iv):
    with pytest.raises(ValueError):
        segment_downloader.run(VideoManifest(key=key, iv=iv, segment_urls=()), cipher, 0, io.BytesIO())


def test_end_to_end(master_text, media_text, key, cipher):
    master = playlist_parser.parse(master_text)
    media = playlist_parser.parse(media_text)
    manifest = manifest_resolver.resolve(master, [media], 0, key)
    seg0 = cipher.encrypt(b'\x47first segment')
    seg1 = cipher.encrypt(b'\x47second segment, a little longer than one block')
    bodies = dict(zip(manifest.segment_urls, [seg0, seg1]))
    sink = io.BytesIO()

    segment_downloader.run(manifest, cipher, 2, sink, fetch=bodies.__getitem__)

    expected = bytes(cipher.decrypt(bytearray(seg0))) + bytes(cipher.decrypt(bytearray(seg1)))
    assert sink.getvalue() == expected


def test_file_sink_commits_on_success(tmp_path):
    output = tmp_path / 'out' / 'lesson.mp4'

    with FileSink(output) as sink:
        sink.write(b'abc')
        sink.write(b'def')

    assert output.read_bytes() == b'abcdef'
    assert not (tmp_path / 'out' / 'lesson.mp4.part').exists()


def test_file_sink_discards_on_failure(tmp_path):
    output = tmp_path / 'lesson.mp4'

    with pytest.raises(RuntimeError):
        with FileSink(output) as sink:
            sink.write(b'abc')
            raise RuntimeError('boom')

    assert list(tmp_path.iterdir()) == []


def test_download_video(tmp_path, cipher, key, iv):
    urls, plaintexts, bodies = make_segments(cipher, 5)
    manifest = VideoManifest(key=key, iv=iv, segment_urls=urls)

    path = segment_downloader.download_video(manifest, tmp_path / 'lesson.mp4', 3, fetch=bodies.__getitem__)

    assert path.read_bytes() == b''.join(plaintexts)


def test_failed_download_leaves_no_file(tmp_path, cipher, key, iv):
    urls, _, bodies = make_segments(cipher, 5)
    manifest = VideoManifest(key=key, iv=iv, segment_urls=urls)

    with pytest.raises(PipelineError):
        segment_downloader.download_video(manifest, tmp_path / 'lesson.mp4', 2,
                                          fetch=RecordingFetcher(bodies, urls, delay=0, fail_at=4))

    assert list(tmp_path.iterdir()) == []


class FakeResponse:
    def __init__(self, content, status_code=200):
        self.content = content
        self.status_code = status_code

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f'{self.status_code} error')


class FakeSession:
    def __init__(self, response):
        self.response = response

    def get(self, url, timeout=None):
        return self.response


def test_fetch_segment_uses_thread_session(monkeypatch):
    monkeypatch.setattr(segment_downloader, '_get_thread_session', lambda headers: FakeSession(FakeResponse(b'ts')))

    assert segment_downloader.fetch_segment('https://cdn.example.com/seg0.ts') == b'ts'


def test_fetch_segment_raises_http_errors(monkeypatch):
    monkeypatch.setattr(segment_downloader, '_get_thread_session',
                        lambda headers: FakeSession(FakeResponse(b'', status_code=404)))

    with pytest.raises(requests.HTTPError):
        segment_downloader.fetch_segment('https://cdn.example.com/seg0.ts')


def test_fetch_encryption_key_wraps_errors():
    session = FakeSession(FakeResponse(b'', status_code=403))

    with pytest.raises(RuntimeError):
        segment_downloader.fetch_encryption_key('https://www.example.com/key.php', session)


def test_fetch_encryption_key(key):
    assert segment_downloader.fetch_encryption_key('https://www.example.com/key.php',
                                                   FakeSession(FakeResponse(key))) == key


def test_staged_segments_live_on_disk(monkeypatch, cipher, key, iv):
    urls, plaintexts, bodies = make_segments(cipher, 4)
    plaintexts[2] = b'\x47' * (2 * 1024 * 1024)
    bodies[urls[2]] = cipher.encrypt(plaintexts[2])
    manifest = VideoManifest(key=key, iv=iv, segment_urls=urls)
    staged_sizes = []
    concatenate = segment_downloader.concatenate_segments

    def inspect_slots(slots, sink):
        for slot in slots:
            assert not isinstance(slot, (io.BytesIO, tempfile.SpooledTemporaryFile))
            staged_sizes.append(os.fstat(slot.fileno()).st_size)
        concatenate(slots, sink)

    monkeypatch.setattr(segment_downloader, 'concatenate_segments', inspect_slots)
    sink = io.BytesIO()

    segment_downloader.run(manifest, cipher, 2, sink, fetch=bodies.__getitem__)

    assert staged_sizes == [len(text) for text in plaintexts]
    assert sink.getvalue() == b''.join(plaintexts)
