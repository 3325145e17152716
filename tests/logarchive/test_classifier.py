"""Tests for per-file line classification."""

import gzip
import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from logarchive.classifier import LineClassifier, server_path
from logarchive.lines import hash_client_id
from logarchive.models import EntityRef, FileStatus, Identified, Invalid, Unidentified


class StubResolver:
    """Resolves by path: /articles/* identified, *.css invalid, everything else unknown."""

    def __init__(self):
        self.calls = []

    async def resolve(self, host, path):
        self.calls.append((host, path))
        if path.startswith("/articles/"):
            return Identified(EntityRef("content.articles", path.rsplit("/", 1)[-1]))
        if path.endswith(".css"):
            return Invalid("denied suffix")
        return Unidentified()


@pytest.fixture
def batcher():
    batcher = MagicMock()
    batcher.check = AsyncMock(return_value=[])
    return batcher


class TestServerPath:
    def test_joins_doc_root(self):
        assert server_path("/var/www/main/", "//News/A.html") == "/var/www/main/News/A.html"

    def test_without_doc_root(self):
        assert server_path("", "a.html") == "/a.html"


class TestLineClassifier:
    @pytest.mark.asyncio
    async def test_classifies_lines(self, tmp_path, batcher, make_line):
        src = tmp_path / "a.log.gz"
        with gzip.open(src, "wt", encoding="utf-8") as f:
            f.write(make_line(path="/articles/1", ip="198.51.100.1") + "\n")
            f.write(make_line(path="/articles/1", ip="198.51.100.1") + "\n")
            f.write(make_line(path="/site.css") + "\n")
            f.write(make_line(path="/Contact.html") + "\n")
            f.write("{broken\n")
        out = tmp_path / "out" / "a.jsonl"
        classifier = LineClassifier(StubResolver(), batcher, doc_root="/var/www/main")

        result = await classifier.classify_file(src, out, "20240101")

        assert result.status == FileStatus.SUCCEEDED
        assert result.lines_read == 5
        assert result.lines_malformed == 1
        assert result.lines_invalid == 1
        assert result.lines_unidentified == 1
        assert result.records == 2
        lines = [json.loads(line) for line in out.read_text().splitlines()]
        assert lines[0] == {
            "db": "content.articles",
            "id": "1",
            "ip": hash_client_id("198.51.100.1"),
            "date": "20240101",
        }
        candidates = batcher.check.call_args[0][0]
        assert [c.server_path for c in candidates] == ["/var/www/main/Contact.html"]

    @pytest.mark.asyncio
    async def test_host_alias_applied(self, tmp_path, batcher, make_line):
        src = tmp_path / "a.log"
        src.write_text(make_line(host="Example.COM", path="/articles/1") + "\n")
        resolver = StubResolver()
        classifier = LineClassifier(resolver, batcher, host_aliases={"example.com": "www.example.com"})

        await classifier.classify_file(src, tmp_path / "a.jsonl", "20240101")

        assert resolver.calls == [("www.example.com", "/articles/1")]

    @pytest.mark.asyncio
    async def test_probe_batches_flushed_at_batch_size(self, tmp_path, batcher, make_line):
        src = tmp_path / "a.log"
        src.write_text("\n".join(make_line(path=f"/page{i}.html") for i in range(5)) + "\n")
        classifier = LineClassifier(StubResolver(), batcher, probe_batch_size=2)

        await classifier.classify_file(src, tmp_path / "a.jsonl", "20240101")

        sizes = [len(call.args[0]) for call in batcher.check.call_args_list]
        assert sizes == [2, 2, 1]

    @pytest.mark.asyncio
    async def test_all_malformed_is_succeeded_empty(self, tmp_path, batcher):
        src = tmp_path / "a.log"
        src.write_text("not json\n{}\n")

        result = await LineClassifier(StubResolver(), batcher).classify_file(
            src, tmp_path / "a.jsonl", "20240101"
        )

        assert result.status == FileStatus.SUCCEEDED_EMPTY
        assert result.records == 0
        batcher.check.assert_not_called()

    @pytest.mark.asyncio
    async def test_empty_file_is_succeeded_empty(self, tmp_path, batcher):
        src = tmp_path / "a.log"
        src.write_text("")

        result = await LineClassifier(StubResolver(), batcher).classify_file(
            src, tmp_path / "a.jsonl", "20240101"
        )

        assert result.status == FileStatus.SUCCEEDED_EMPTY
        assert (tmp_path / "a.jsonl").read_text() == ""
