#!/usr/bin/env python3
"""
Main entry point for the encrypted lesson downloader.
"""

import sys
import os
import argparse
import logging
import re

import requests

from selene import manifest_resolver
from selene import metadata_extractor
from selene import playlist_parser
from selene import quality_selector
from selene import segment_downloader
from selene.errors import SeleneError

from selene import __version__


def sanitize_filename(filename: str) -> str:
    """
    Sanitize filename for filesystem use.
    """
    filename = re.sub(r'[<>:"/\\|?*]', '_', filename)
    # Remove leading/trailing dots and spaces
    filename = filename.strip().strip('. ')
    return filename


def default_filename(playlist_url: str, hq: bool) -> str:
    stem = playlist_url.split('?', 1)[0].rstrip('/').rsplit('/', 1)[-1]
    stem = stem.rsplit('.', 1)[0] or 'lesson'
    quality = 'hq' if hq else 'nq'
    return f"selene_{sanitize_filename(stem)}_{quality}.mp4"


def print_playlist_info(master, media_variants):
    print("\nStreams:")
    for idx, stream in enumerate(metadata_extractor.extract_stream_info(master)):
        print(f"  [{idx}] bandwidth={stream['bandwidth']} resolution={stream['resolution']} {stream['uri']}")

    print(f"\nRetrieved {len(media_variants)} media playlists:")
    for idx, media in enumerate(media_variants):
        info = metadata_extractor.extract_segment_info(media)
        encryption = metadata_extractor.extract_encryption_info(media) or {}
        print(f"  [{idx}] segments={info['total_segments']} duration={info['duration']:.2f}s "
              f"encryption={encryption.get('method', 'None')}")


def main():
    """
    Main workflow for downloading an encrypted lesson.
    """
    parser = argparse.ArgumentParser(
        description='Download and decrypt AES-128 encrypted HLS lessons',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python downloader.py "https://host/lesson/playlist.m3u8" --key-url "https://host/key.php"
  python downloader.py "https://host/lesson/playlist.m3u8" --key-file lesson.key --hq --parallel 8
        """
    )
    parser.add_argument('url', help='master M3U8 playlist URL')
    key_group = parser.add_mutually_exclusive_group()
    key_group.add_argument('--key-url', help='URL serving the raw 16 byte key')
    key_group.add_argument('--key-file', help='file holding the raw 16 byte key')
    parser.add_argument('--hq', action='store_true', help='request high quality video')
    parser.add_argument('--parallel', type=int, default=segment_downloader.DEFAULT_CONCURRENCY,
                        help='parallel downloads allowed (default: %(default)s)')
    parser.add_argument('--info', action='store_true', help='show playlist details and exit')
    parser.add_argument('-f', '--filename', help='filename (optional, without extension)')
    parser.add_argument('-o', '--out-dir', help='output directory (optional)')
    parser.add_argument('-v', '--verbose', action='store_true', help='enable debug logging')

    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format='%(asctime)s %(levelname)s %(name)s: %(message)s'
    )

    print(f"selene / v{__version__}\n")

    if args.parallel < 1:
        parser.error("--parallel must be at least 1")

    session = requests.Session()
    session.headers.update(playlist_parser.get_browser_headers())

    def fetch_text(url: str) -> str:
        return playlist_parser.fetch_playlist_text(url, session)

    # Step 1: playlist details only
    if args.info:
        try:
            text = manifest_resolver.fetch_playlist_text_with_retry(args.url, fetch_text)
            master = playlist_parser.parse(text)
            if not master.is_primary:
                print("ERROR: Not a master playlist")
                sys.exit(1)
            media_variants = manifest_resolver.fetch_media_variants(master, fetch_text)
        except (SeleneError, requests.RequestException) as e:
            print(f"ERROR: Failed to read playlist: {e}")
            sys.exit(1)
        print_playlist_info(master, media_variants)
        return

    if not args.key_url and not args.key_file:
        parser.error("one of --key-url or --key-file is required")

    # Step 2: output location
    output_dir = args.out_dir or os.getcwd()
    if args.filename:
        output_filename = sanitize_filename(args.filename) + '.mp4'
    else:
        output_filename = default_filename(args.url, args.hq)

    output_path = os.path.join(output_dir, output_filename)
    if os.path.exists(output_path):
        print(f"ERROR: File \"{output_filename}\" already exists in \"{output_dir}\"")
        sys.exit(1)

    print(f"Saving file to [{output_path}]")

    # Step 3: key
    try:
        if args.key_file:
            with open(args.key_file, 'rb') as f:
                key = f.read()
        else:
            print(f"Fetching encryption key from {args.key_url}...")
            key = segment_downloader.fetch_encryption_key(args.key_url, session)
    except (OSError, RuntimeError) as e:
        print(f"ERROR: Failed to get decryption key: {e}")
        sys.exit(1)
    print(f"Encryption key fetched: {len(key)} bytes")

    # Step 4: resolve playlist into segments
    print("\nFetching and parsing playlists...")
    variant_index = quality_selector.select_variant_index(args.hq)
    try:
        manifest = manifest_resolver.resolve_from_url(args.url, key, fetch_text, variant_index)
    except (SeleneError, requests.RequestException) as e:
        print(f"ERROR: Failed to resolve playlist: {e}")
        sys.exit(1)
    session.close()

    total = len(manifest.segment_urls)
    print(f"Retrieved playlist details, total segments: {total}")

    # Step 5: download, decrypt and merge
    def report(completed: int, total: int):
        if completed % 10 == 0 or completed == total:
            print(f"  Progress: {completed}/{total} segments ({completed * 100 // total}%)")

    print(f"\nDownloading [{total}] parts with [{args.parallel}] threads")
    print("-" * 80)
    try:
        path = segment_downloader.download_video(manifest, output_path, args.parallel, progress=report)
    except (SeleneError, OSError) as e:
        print("-" * 80)
        print(f"ERROR: {e}")
        sys.exit(1)

    print("-" * 80)
    print(f"✓ All parts merged: {output_filename}")
    print(f"✓ {path}")


if __name__ == "__main__":
    main()
