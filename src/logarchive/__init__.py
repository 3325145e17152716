"""
Log Archiver: daily CDN access-log archival.

For every configured group, lists unprocessed daily partitions in the raw log
bucket, resolves each request line to a business entity, dedupes and merges
the result, uploads it to the archive bucket, verifies it with an independent
reader and only then records the partition as processed.

Stages:
    catalog   - pending partitions (listing minus processing-state rows)
    fetch     - bounded-concurrency download into a staging directory
    classify  - per-file line resolution, existence probes for unknown paths
    merge     - partition-wide sort + dedupe of resolved entity lines
    archive   - upload, independent verification, commit barrier, cleanup

Dependencies:
    - core.*: Reusable components (errors, resilience, logging)
    - boto3: Object storage
    - SQLAlchemy: Processing state and identifier map
    - pydantic: Raw log line validation
"""

__version__ = "0.1.0"
