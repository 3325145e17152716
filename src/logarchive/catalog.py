"""
Partition catalog: which daily partitions still need processing.

A partition is pending when its date-named prefix exists in the source
bucket, it is not the newest listed partition (that one may still be
receiving objects) and it has no processing-state row.
"""

import logging
import random
import re
from typing import List, Optional

from config.config import ArchiverConfig, GroupConfig
from core.errors.exceptions import CatalogError, PipelineError
from core.logging.context_managers import log_phase
from logarchive.models import Partition
from logarchive.state import StateStore
from logarchive.storage import ObjectStore

logger = logging.getLogger(__name__)

DATE_KEY_PATTERN = re.compile(r"^(\d{8})$")


def date_key_from_prefix(prefix: str, base: str = "") -> Optional[str]:
    """Extract the YYYYMMDD key from a common prefix like "20240101/"."""
    name = prefix[len(base):] if base and prefix.startswith(base) else prefix
    name = name.strip("/").rsplit("/", 1)[-1]
    match = DATE_KEY_PATTERN.match(name)
    return match.group(1) if match else None


def select_pending(date_keys: List[str], processed: set, rng: Optional[random.Random] = None) -> List[str]:
    """
    Order and filter listed date keys.

    The listing is shuffled then sorted so the result never depends on the
    store's listing order; the most recent key is dropped before filtering.
    """
    keys = list(dict.fromkeys(date_keys))
    (rng or random).shuffle(keys)
    keys.sort()
    if keys:
        keys = keys[:-1]
    return [k for k in keys if k not in processed]


class PartitionCatalog:
    """
    Lists a group's pending partitions.

    Example:
        catalog = PartitionCatalog(source_store, state_store, config)
        for partition in await catalog.pending(group):
            ...
    """

    def __init__(
        self,
        source: ObjectStore,
        state: StateStore,
        config: ArchiverConfig,
        rng: Optional[random.Random] = None,
    ):
        self.source = source
        self.state = state
        self.config = config
        self.rng = rng

    def _partition(self, group: GroupConfig, prefix: str, date_key: str) -> Partition:
        return Partition(
            date_key=date_key,
            group=group.name,
            prefix=prefix,
            staging_dir=self.config.staging_dir(group.name, date_key),
            scratch_dir=self.config.scratch_dir(group.name, date_key),
        )

    async def pending(self, group: GroupConfig) -> List[Partition]:
        """
        Pending partitions in ascending date order.

        Raises:
            CatalogError: listing or state query failed; nothing is returned
        """
        base = group.source_prefix
        if base and not base.endswith("/"):
            base = f"{base}/"

        try:
            with log_phase(logger, "list_partitions", bucket=group.source_bucket):
                prefixes = await self.source.async_list_prefixes(group.source_bucket, base)
            processed = await self.state.async_processed_date_keys(group.name)
        except PipelineError as e:
            raise CatalogError(
                f"Failed to build catalog for group {group.name}",
                cause=e,
                context={"bucket": group.source_bucket},
            ) from e

        by_key = {}
        ignored = 0
        for prefix in prefixes:
            date_key = date_key_from_prefix(prefix, base)
            if date_key is None:
                ignored += 1
                continue
            by_key[date_key] = prefix

        pending_keys = select_pending(list(by_key), processed, self.rng)
        partitions = [self._partition(group, by_key[k], k) for k in pending_keys]

        logger.info(
            "Catalog for %s: %d listed, %d processed, %d pending",
            group.name,
            len(by_key),
            len(processed),
            len(partitions),
            extra={
                "partitions_listed": len(by_key),
                "partitions_processed": len(processed),
                "partitions_pending": len(partitions),
                "partitions_ignored": ignored,
            },
        )
        return partitions
