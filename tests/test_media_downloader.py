"""Tests for media download, classification and cleanup."""

import os
import threading
import time
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from unittest.mock import patch

import pytest
import requests

from conftest import make_response
from recipe_importer.errors import MediaDownloadError
from recipe_importer.media_downloader import (
    cleanup_media,
    download_media,
    extract_extension,
    get_media_type,
    parse_media_url,
    sweep_stale_media,
)

GET = "recipe_importer.media_downloader.requests.get"


class TrickleHandler(BaseHTTPRequestHandler):
    """Sends a valid image response one byte at a time, never stalling long enough for a read timeout."""

    def do_GET(self):
        self.send_response(200)
        self.send_header("Content-Type", "image/jpeg")
        self.send_header("Content-Length", "25")
        self.end_headers()
        try:
            for _ in range(25):
                self.wfile.write(b"x")
                self.wfile.flush()
                time.sleep(0.2)
        except OSError:
            pass

    def log_message(self, format, *args):
        pass


@pytest.fixture
def trickle_url(monkeypatch):
    monkeypatch.setenv("NO_PROXY", "127.0.0.1")
    monkeypatch.setenv("no_proxy", "127.0.0.1")
    server = ThreadingHTTPServer(("127.0.0.1", 0), TrickleHandler)
    server.daemon_threads = True
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    yield f"http://127.0.0.1:{server.server_address[1]}/slow.jpg"
    server.shutdown()
    server.server_close()


class TestGetMediaType:

    def test_content_type_wins(self):
        assert get_media_type("https://cdn.example.com/file.jpg", "video/mp4") == "video"
        assert get_media_type("https://cdn.example.com/file", "image/webp") == "image"

    def test_generic_content_type_falls_back_to_extension(self):
        assert get_media_type("https://cdn.example.com/clip.MOV", "application/octet-stream") == "video"
        assert get_media_type("https://cdn.example.com/photo.jpeg?x=1", None) == "image"

    def test_unknown(self):
        assert get_media_type("https://cdn.example.com/doc.pdf", "application/pdf") is None
        assert get_media_type("https://cdn.example.com/doc.pdf", None) is None

    def test_extract_extension_ignores_query(self):
        assert extract_extension("https://cdn.example.com/a/b.mp4?sig=abc") == ".mp4"
        assert extract_extension("https://cdn.example.com/a/b") is None


class TestParseMediaUrl:

    def test_rejects_malformed_url(self):
        with pytest.raises(MediaDownloadError) as exc:
            parse_media_url("not a url")
        assert exc.value.code == "INVALID_URL"
        assert not exc.value.retryable

    def test_rejects_other_protocols(self):
        with pytest.raises(MediaDownloadError) as exc:
            parse_media_url("ftp://cdn.example.com/a.jpg")
        assert exc.value.code == "UNSUPPORTED_PROTOCOL"


class TestDownloadMedia:

    def test_downloads_image(self, media_dir):
        response = make_response(b"jpeg-bytes", headers={"Content-Type": "image/jpeg", "Content-Length": "10"})
        with patch(GET, return_value=response) as mock_get:
            result = download_media("https://cdn.example.com/photo.jpg", target_dir=str(media_dir))

        assert mock_get.call_args.kwargs["stream"] is True
        assert result.media_type == "image"
        assert result.mime_type == "image/jpeg"
        assert result.size == 10
        assert os.path.dirname(result.file_path) == str(media_dir)
        with open(result.file_path, "rb") as f:
            assert f.read() == b"jpeg-bytes"

    def test_video_content_type_with_unknown_extension(self, media_dir):
        response = make_response(b"mp4", headers={"Content-Type": "video/mp4; codecs=avc1"})
        with patch(GET, return_value=response):
            result = download_media("https://cdn.example.com/stream/asset.bin", target_dir=str(media_dir))
        assert result.media_type == "video"
        assert result.mime_type == "video/mp4"

    def test_generic_content_type_uses_extension(self, media_dir):
        response = make_response(b"mp4", headers={"Content-Type": "application/octet-stream"})
        with patch(GET, return_value=response):
            result = download_media("https://cdn.example.com/reel.mp4", target_dir=str(media_dir))
        assert result.media_type == "video"
        assert result.mime_type == "video/mp4"

    def test_preferred_filename_is_kept_readable(self, media_dir):
        response = make_response(b"x", headers={"Content-Type": "image/png"})
        with patch(GET, return_value=response):
            result = download_media("https://cdn.example.com/a.png", filename="C0ffee/1.png",
                                    target_dir=str(media_dir))
        assert os.path.basename(result.file_path).endswith("_C0ffee_1.png")

    def test_declared_length_over_limit_leaves_no_file(self, media_dir):
        response = make_response(b"x" * 10, headers={"Content-Type": "video/mp4", "Content-Length": "1000"})
        with patch(GET, return_value=response):
            with pytest.raises(MediaDownloadError) as exc:
                download_media("https://cdn.example.com/big.mp4", max_bytes=100, target_dir=str(media_dir))
        assert exc.value.code == "FILE_TOO_LARGE"
        assert os.listdir(media_dir) == []

    def test_streamed_size_over_limit_removes_partial_file(self, media_dir):
        response = make_response(b"x" * 500, headers={"Content-Type": "video/mp4"})
        with patch(GET, return_value=response):
            with pytest.raises(MediaDownloadError) as exc:
                download_media("https://cdn.example.com/big.mp4", max_bytes=100, target_dir=str(media_dir))
        assert exc.value.code == "FILE_TOO_LARGE"
        assert os.listdir(media_dir) == []

    def test_unsupported_media_type(self, media_dir):
        response = make_response(b"<html>", headers={"Content-Type": "text/html"})
        with patch(GET, return_value=response):
            with pytest.raises(MediaDownloadError) as exc:
                download_media("https://cdn.example.com/page", target_dir=str(media_dir))
        assert exc.value.code == "UNSUPPORTED_MEDIA_TYPE"
        assert os.listdir(media_dir) == []

    def test_http_error_status(self, media_dir):
        response = make_response(b"", status=404, headers={"Content-Type": "text/plain"})
        with patch(GET, return_value=response):
            with pytest.raises(MediaDownloadError) as exc:
                download_media("https://cdn.example.com/gone.jpg", target_dir=str(media_dir))
        assert exc.value.code == "DOWNLOAD_FAILED"
        assert exc.value.retryable

    @pytest.mark.parametrize("error", [requests.ConnectionError("reset"), requests.Timeout("slow")])
    def test_network_errors(self, media_dir, error):
        with patch(GET, side_effect=error):
            with pytest.raises(MediaDownloadError) as exc:
                download_media("https://cdn.example.com/a.jpg", target_dir=str(media_dir))
        assert exc.value.code == "NETWORK_ERROR"
        assert exc.value.__cause__ is error

    def test_slow_trickle_is_bounded_by_wall_clock(self, media_dir, trickle_url):
        started = time.monotonic()
        with pytest.raises(MediaDownloadError) as exc:
            download_media(trickle_url, timeout_ms=1000, target_dir=str(media_dir))
        elapsed = time.monotonic() - started

        assert exc.value.code == "NETWORK_ERROR"
        assert exc.value.retryable
        assert elapsed < 3
        assert os.listdir(media_dir) == []

    def test_invalid_url_makes_no_request(self, media_dir):
        with patch(GET) as mock_get:
            with pytest.raises(MediaDownloadError):
                download_media("file:///etc/passwd", target_dir=str(media_dir))
        mock_get.assert_not_called()


class TestCleanup:

    def test_cleanup_removes_file(self, media_dir):
        path = media_dir / "a.jpg"
        path.write_bytes(b"x")
        cleanup_media(str(path))
        assert not path.exists()

    def test_cleanup_missing_file_or_none(self, media_dir):
        cleanup_media(None)
        cleanup_media(str(media_dir / "missing.jpg"))

    def test_sweep_removes_only_stale_files(self, media_dir):
        stale = media_dir / "stale.mp4"
        fresh = media_dir / "fresh.mp4"
        stale.write_bytes(b"x")
        fresh.write_bytes(b"x")
        old = time.time() - 3600
        os.utime(stale, (old, old))

        removed = sweep_stale_media(max_age_seconds=60, target_dir=str(media_dir))

        assert removed == 1
        assert not stale.exists()
        assert fresh.exists()

    def test_sweep_missing_directory(self, tmp_path):
        assert sweep_stale_media(target_dir=str(tmp_path / "nope")) == 0
