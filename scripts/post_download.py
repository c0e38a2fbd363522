#!/usr/bin/env python3
"""
Send one download request to a running gateway and save the result.

Usage:
    python scripts/post_download.py <youtube_url>
    python scripts/post_download.py <youtube_url> --server http://localhost:3000
    python scripts/post_download.py <youtube_url> --out downloads/
"""

import argparse
import re
import sys
from pathlib import Path

import requests

DEFAULT_SERVER = "http://localhost:3000"


def filename_from_headers(headers, fallback: str) -> str:
    """Pull the attachment name out of Content-Disposition."""
    disposition = headers.get("Content-Disposition", "")
    match = re.search(r'filename="([^"]+)"', disposition)
    return match.group(1) if match else fallback


def post_download(url: str, server: str, out_dir: Path) -> bool:
    print(f"POST {server}/download")
    print(f"   url: {url}")

    try:
        response = requests.post(f"{server}/download", json={"url": url}, stream=True, timeout=600)
    except requests.RequestException as e:
        print(f"❌ Request failed: {e}")
        return False

    print(f"   Status: {response.status_code}")
    for name in ("Content-Type", "Content-Length", "Content-Disposition"):
        if name in response.headers:
            print(f"   {name}: {response.headers[name]}")

    if response.status_code != 200:
        print(f"❌ Error body: {response.text[:500]}")
        return False

    fallback = "playlist.zip" if "zip" in response.headers.get("Content-Type", "") else "audio.mp3"
    target = out_dir / filename_from_headers(response.headers, fallback)
    out_dir.mkdir(parents=True, exist_ok=True)

    size = 0
    with open(target, "wb") as f:
        for chunk in response.iter_content(chunk_size=65536):
            f.write(chunk)
            size += len(chunk)

    print(f"✅ Saved {target} ({size / 1024:.1f} KB)")
    return True


def main():
    parser = argparse.ArgumentParser(description="Smoke test for POST /download")
    parser.add_argument("url", help="YouTube video or playlist URL")
    parser.add_argument("--server", default=DEFAULT_SERVER, help="Gateway base URL")
    parser.add_argument("--out", default=".", help="Directory to save the download in")
    args = parser.parse_args()

    ok = post_download(args.url, args.server.rstrip("/"), Path(args.out))
    sys.exit(0 if ok else 1)


if __name__ == "__main__":
    main()
