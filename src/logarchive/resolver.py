"""
Request resolution: (host, path) -> Identified | Invalid | Unidentified.

The pipeline only depends on the Resolver protocol. RuleBasedResolver is the
configured policy: host allow/deny lists, deny rules for paths that can
never be entities, regex rewrites and ordered entity rules looked up in the
relational store.
"""

import hashlib
import logging
import re
from datetime import date
from typing import Any, Dict, List, Optional, Protocol, Tuple

from config.config import EntityRule, ResolverRules
from core.errors.exceptions import PipelineError
from core.logging.utilities import log_exception
from logarchive.identifiers import IdentifierCache
from logarchive.models import (
    EntityRef,
    IdentifierCacheEntry,
    Identified,
    Invalid,
    Resolution,
    Unidentified,
)
from logarchive.sidechannel import SideChannelLog
from logarchive.state import StateStore

logger = logging.getLogger(__name__)

_REPEATED_SLASHES = re.compile(r"/+")


class Resolver(Protocol):
    """Maps a request to an entity. Must be safe to call concurrently."""

    async def resolve(self, host: str, path: str) -> Resolution:
        ...


def normalize_host(host: str) -> str:
    """Trim, lower-case and drop a trailing :port."""
    host = host.strip().lower()
    if host.startswith("["):
        # [ipv6]:port
        end = host.find("]")
        return host[: end + 1] if end != -1 else host
    if host.count(":") == 1:
        host = host.split(":", 1)[0]
    return host.rstrip(".")


def normalize_path(path: str) -> str:
    """Trim, lower-case and collapse repeated slashes."""
    path = _REPEATED_SLASHES.sub("/", path.strip().lower())
    if not path.startswith("/"):
        path = f"/{path}"
    return path


def content_hash(host: str, path: str) -> str:
    return hashlib.md5(f"{host}{path}".encode("utf-8")).hexdigest()


def _entity_status(value: Any) -> str:
    if value is None:
        return ""
    if str(value) == "0":
        return "active"
    if str(value) == "1":
        return "inactive"
    return str(value)


class _CompiledRule:
    def __init__(self, rule: EntityRule):
        self.rule = rule
        self.regex = re.compile(rule.pattern)


class RuleBasedResolver:
    """
    Config-driven resolver.

    Order: host check -> identifier cache -> rewrites -> deny rules ->
    entity rules -> Unidentified.

    Example:
        resolver = RuleBasedResolver(group.resolver, cache, store, site=group.name)
        resolution = await resolver.resolve("www.example.com", "/articles/a.html")
    """

    def __init__(
        self,
        rules: ResolverRules,
        cache: IdentifierCache,
        store: StateStore,
        site: str = "",
        unmapped_log: Optional[SideChannelLog] = None,
    ):
        self.rules = rules
        self.cache = cache
        self.store = store
        self.site = site
        self.unmapped_log = unmapped_log

        self._allowed = {normalize_host(h) for h in rules.allowed_hosts}
        self._denied = {normalize_host(h) for h in rules.denied_hosts}
        self._fragments = [f.lower() for f in rules.denied_path_fragments]
        self._suffixes = tuple(s.lower() for s in rules.denied_suffixes)
        self._static = {normalize_path(p) for p in rules.static_pages}
        self._rewrites: List[Tuple[re.Pattern, str]] = [
            (re.compile(r.pattern), r.replacement) for r in rules.rewrites
        ]
        self._entity_rules = [_CompiledRule(r) for r in rules.entity_rules]

    def _host_allowed(self, host: str) -> bool:
        if host in self._denied:
            return False
        return not self._allowed or host in self._allowed

    def _denied_path(self, path: str) -> Optional[str]:
        if path in self._static:
            return "static page"
        for fragment in self._fragments:
            if fragment in path:
                return f"denied fragment {fragment}"
        if self._suffixes and path.endswith(self._suffixes):
            return "denied suffix"
        return None

    async def resolve(self, host: str, path: str) -> Resolution:
        host = normalize_host(host)
        path = normalize_path(path)

        if not self._host_allowed(host):
            return Invalid("host not allowed")

        key = content_hash(host, path)
        cached = self.cache.get(key)
        if cached is not None:
            return Identified(cached)

        rewritten = path
        for pattern, replacement in self._rewrites:
            rewritten = pattern.sub(replacement, rewritten)
        rewritten = normalize_path(rewritten)

        reason = self._denied_path(rewritten)
        if reason:
            return Invalid(reason)

        for compiled in self._entity_rules:
            match = compiled.regex.search(rewritten)
            if match is None:
                continue
            return await self._resolve_rule(compiled.rule, match.group("key"), host, path, key)

        return Unidentified()

    async def _lookup(self, rule: EntityRule, value: str) -> Optional[Dict[str, Any]]:
        row = await self.store.async_lookup_entity(rule.table, rule.column, value)
        if row is None and rule.alias_table:
            origin = await self.store.async_lookup_alias(
                rule.alias_table, rule.alias_from, rule.alias_to, value
            )
            if origin is not None:
                row = await self.store.async_lookup_entity(rule.table, rule.column, origin)
        return row

    async def _resolve_rule(
        self, rule: EntityRule, value: str, host: str, path: str, key: str
    ) -> Resolution:
        try:
            row = await self._lookup(rule, value)
        except PipelineError as e:
            log_exception(
                logger,
                e,
                f"Entity lookup failed for rule {rule.name or rule.table}",
                level=logging.WARNING,
                include_traceback=False,
            )
            return Unidentified()

        if row is None:
            if self.unmapped_log is not None:
                self.unmapped_log.append([f"{host}{path}"])
            return Unidentified()

        entity_id = row.get(rule.id_column or rule.column, value)
        entity = EntityRef(table=rule.table, entity_id=str(entity_id))
        await self.cache.add(
            IdentifierCacheEntry(
                content_hash=key,
                entity=entity,
                url=f"{host}{path}",
                site=rule.site or self.site,
                status=_entity_status(row.get(rule.status_column)) if rule.status_column else "",
                date_added=date.today(),
            )
        )
        return Identified(entity)
