"""Tests for staged file line iteration and client id hashing."""

import gzip
import hashlib

from logarchive.lines import hash_client_id, iter_log_lines


class TestIterLogLines:
    def test_plain_file_skips_blank_lines(self, tmp_path):
        path = tmp_path / "a.log"
        path.write_text("one\n\n  \ntwo\n")

        assert list(iter_log_lines(path)) == ["one", "two"]

    def test_gzip_file(self, tmp_path):
        path = tmp_path / "a.log.gz"
        with gzip.open(path, "wt", encoding="utf-8") as f:
            f.write("one\ntwo\n")

        assert list(iter_log_lines(path)) == ["one", "two"]

    def test_is_lazy_and_restartable(self, tmp_path):
        path = tmp_path / "a.log"
        path.write_text("one\ntwo\n")

        lines = iter_log_lines(path)
        assert next(lines) == "one"
        assert list(iter_log_lines(path)) == ["one", "two"]

    def test_invalid_utf8_replaced(self, tmp_path):
        path = tmp_path / "a.log"
        path.write_bytes(b"ok\n\xff\xfe\n")

        lines = list(iter_log_lines(path))
        assert lines[0] == "ok"
        assert len(lines) == 2


class TestHashClientId:
    def test_md5_hex(self):
        assert hash_client_id("203.0.113.9") == hashlib.md5(b"203.0.113.9").hexdigest()

    def test_does_not_contain_raw_value(self):
        assert "203.0.113.9" not in hash_client_id("203.0.113.9")
