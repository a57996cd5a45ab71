"""Tests for the processing function and content hashing."""

import hashlib
from datetime import datetime

import pytest

from file_processor.errors import ContentUnavailable, ProcessingTimeout
from file_processor.queue import process_content
from file_processor.queue.processing import resolve_locator

HELLO_WORLD_SHA256 = "b94d27b9934d3e08a52e52d7da7dabfac484efe37a5380ee9088f7ace2efcde9"


class TestProcessContent:
    def test_hello_world_digest(self, hello_file):
        result = process_content(str(hello_file))

        assert result.digest == HELLO_WORLD_SHA256
        assert result.byte_size == 11
        assert datetime.fromisoformat(result.completed_at).tzinfo is not None

    @pytest.mark.parametrize(
        "content",
        [b"", b"\x00", b"a" * 65536, b"abc" * 50_000],
        ids=["empty", "nul", "one-chunk", "multi-chunk"],
    )
    def test_digest_matches_hashlib(self, content_dir, content):
        path = content_dir / "blob.bin"
        path.write_bytes(content)

        result = process_content(str(path))

        assert result.digest == hashlib.sha256(content).hexdigest()
        assert result.byte_size == len(content)

    def test_deterministic(self, hello_file):
        first = process_content(str(hello_file))
        second = process_content(str(hello_file))

        assert first.digest == second.digest
        assert first.byte_size == second.byte_size

    def test_file_uri_locator(self, hello_file):
        result = process_content(hello_file.as_uri())
        assert result.digest == HELLO_WORLD_SHA256

    def test_missing_content(self, content_dir):
        with pytest.raises(ContentUnavailable) as exc_info:
            process_content(str(content_dir / "nope.bin"))
        assert "nope.bin" in str(exc_info.value)

    def test_directory_is_unavailable(self, content_dir):
        with pytest.raises(ContentUnavailable):
            process_content(str(content_dir))

    def test_timeout_during_simulated_delay(self, hello_file):
        with pytest.raises(ProcessingTimeout):
            process_content(str(hello_file), timeout_s=0.05, simulated_delay_s=1.0)

    def test_simulated_delay_within_timeout(self, hello_file):
        result = process_content(str(hello_file), timeout_s=1.0, simulated_delay_s=0.01)
        assert result.byte_size == 11


class TestLocators:
    def test_resolve_locator(self):
        assert resolve_locator("/data/a.bin") == "/data/a.bin"
        assert resolve_locator("file:///data/my%20file.bin") == "/data/my file.bin"
