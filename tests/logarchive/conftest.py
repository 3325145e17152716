"""Shared fixtures for archive pipeline tests: in-memory object store and SQLite state."""

import json
from pathlib import Path
from typing import Dict, List, Optional, Set

import pytest
from sqlalchemy import create_engine, event

from config.config import ArchiverConfig, DatabaseSettings
from core.errors.exceptions import PermanentError, TransientError
from logarchive.models import Partition
from logarchive.state import StateStore


class FakeObjectStore:
    """In-memory stand-in for ObjectStore's async surface."""

    def __init__(self, buckets: Optional[Dict[str, Dict[str, bytes]]] = None):
        self.buckets: Dict[str, Dict[str, bytes]] = buckets or {}
        self.fail_downloads: Set[str] = set()
        self.fail_uploads = False
        self.fail_listing = False
        self.hidden: Set[str] = set()
        self.downloads: List[str] = []
        self.uploads: List[str] = []

    def put(self, bucket: str, key: str, data: bytes) -> None:
        self.buckets.setdefault(bucket, {})[key] = data

    async def async_list_prefixes(self, bucket, prefix="", delimiter="/"):
        if self.fail_listing:
            raise TransientError("listing unavailable")
        prefixes = []
        for key in self.buckets.get(bucket, {}):
            if not key.startswith(prefix):
                continue
            rest = key[len(prefix):]
            if delimiter in rest:
                common = prefix + rest.split(delimiter, 1)[0] + delimiter
                if common not in prefixes:
                    prefixes.append(common)
        return prefixes

    async def async_list_keys(self, bucket, prefix="", limit=None):
        if self.fail_listing:
            raise TransientError("listing unavailable")
        keys = [
            k for k in self.buckets.get(bucket, {})
            if k.startswith(prefix) and k not in self.hidden
        ]
        return keys[:limit] if limit is not None else keys

    async def async_download_file(self, bucket, key, dest):
        if key in self.fail_downloads:
            raise PermanentError(f"download refused: {key}")
        dest = Path(dest)
        dest.parent.mkdir(parents=True, exist_ok=True)
        dest.write_bytes(self.buckets[bucket][key])
        self.downloads.append(key)
        return dest

    async def async_upload_file(self, path, bucket, key):
        if self.fail_uploads:
            raise TransientError("upload unavailable")
        self.put(bucket, key, Path(path).read_bytes())
        self.uploads.append(key)

    async def async_head(self, bucket, key):
        data = self.buckets.get(bucket, {}).get(key)
        if data is None or key in self.hidden:
            return None
        return {"ContentLength": len(data)}


def log_line(host="www.example.com", path="/articles/hello.html", ip="203.0.113.9") -> str:
    return json.dumps(
        {
            "ClientRequestHost": host,
            "ClientRequestPath": path,
            "ClientIP": ip,
            "EdgeStartTimestamp": 1704067200,
        }
    )


@pytest.fixture
def make_line():
    return log_line


@pytest.fixture
def fake_store():
    return FakeObjectStore()


@pytest.fixture
def content_db(tmp_path) -> Path:
    return tmp_path / "content.db"


@pytest.fixture
def state_engine(tmp_path, content_db):
    """SQLite engine with a second database attached as "content" for entity tables."""
    engine = create_engine(f"sqlite:///{tmp_path / 'state.db'}")

    @event.listens_for(engine, "connect")
    def _attach(dbapi_connection, _record):
        dbapi_connection.execute(f"ATTACH DATABASE '{content_db}' AS content")

    with engine.begin() as conn:
        conn.exec_driver_sql(
            "CREATE TABLE content.articles (id INTEGER PRIMARY KEY, slug TEXT, status INTEGER)"
        )
        conn.exec_driver_sql(
            "CREATE TABLE content.redirects (destination TEXT, origin TEXT)"
        )
        conn.exec_driver_sql(
            "INSERT INTO content.articles (id, slug, status) VALUES "
            "(7, 'hello', 0), (8, 'goodbye', 1)"
        )
        conn.exec_driver_sql(
            "INSERT INTO content.redirects (destination, origin) VALUES ('hello-again', 'hello')"
        )
    yield engine
    engine.dispose()


@pytest.fixture
def state_store(tmp_path, state_engine):
    settings = DatabaseSettings(url=f"sqlite:///{tmp_path / 'state.db'}")
    store = StateStore(settings, engine=state_engine)
    store.create_tables()
    return store


@pytest.fixture
def archiver_config(tmp_path) -> ArchiverConfig:
    config = ArchiverConfig.from_dict(
        {
            "work_dir": str(tmp_path / "work"),
            "side_channel_dir": str(tmp_path / "side"),
            "database": {"url": f"sqlite:///{tmp_path / 'state.db'}"},
            "probe": {"command": "", "retry_delay_seconds": 0, "max_attempts": 2},
            "runner": {"batch_size": 2, "file_timeout_seconds": 30, "batch_timeout_seconds": 30},
            "fetch": {"concurrency": 4},
            "groups": [
                {
                    "name": "main",
                    "source_bucket": "cdn-logs-main",
                    "archive_bucket": "archive-main",
                    "doc_root": str(tmp_path / "docroot"),
                    "host_aliases": {"example.com": "www.example.com"},
                    "resolver": {
                        "allowed_hosts": ["www.example.com"],
                        "denied_suffixes": [".css", ".js"],
                        "static_pages": ["/"],
                        "entity_rules": [
                            {
                                "name": "article",
                                "pattern": "^/articles/(?P<key>[a-z0-9-]+)\\.html$",
                                "table": "content.articles",
                                "column": "slug",
                                "id_column": "id",
                                "status_column": "status",
                                "alias_table": "content.redirects",
                            }
                        ],
                    },
                }
            ],
        }
    )
    config.validate()
    return config


@pytest.fixture
def partition(tmp_path) -> Partition:
    return Partition(
        date_key="20240101",
        group="main",
        prefix="20240101/",
        staging_dir=tmp_path / "work" / "staging" / "main" / "20240101",
        scratch_dir=tmp_path / "work" / "scratch" / "main" / "20240101",
    )
