"""
Remote existence probe for requests the resolver could not classify.

A batch of server paths is checked with one shell loop run through the
configured command prefix (typically ssh). Paths are quoted with
shlex.quote in build_probe_script, the one place the command is assembled.

Failure policy:
    - auth failure (stderr marker)  -> ProbeAuthError, trips the circuit breaker;
                                       every later batch is a silent no-op
    - timeout / other failure       -> retried with a fixed delay, then the
                                       batch is skipped
"""

import asyncio
import logging
import shlex
import subprocess
import time
from typing import Dict, Iterable, List, Optional, Sequence

from config.config import ProbeSettings
from core.errors.exceptions import (
    CircuitOpenError,
    ProbeAuthError,
    ProbeError,
    ProbeTimeoutError,
)
from core.logging.utilities import log_exception
from core.resilience.circuit_breaker import PROBE_CIRCUIT_CONFIG, CircuitBreaker
from core.resilience.retry import RetryConfig, with_retry_async
from logarchive.models import UnresolvedCandidate
from logarchive.sidechannel import SideChannelLog

logger = logging.getLogger(__name__)

EXISTS_PREFIX = "EXISTS:"
NOT_EXISTS_PREFIX = "NOTEXISTS:"


def build_probe_script(paths: Sequence[str]) -> str:
    quoted = " ".join(shlex.quote(p) for p in paths)
    return (
        f"for file in {quoted}; do "
        f'test -f "$file" && echo "{EXISTS_PREFIX}$file" || echo "{NOT_EXISTS_PREFIX}$file"; '
        f"done"
    )


def build_probe_command(prefix: str, paths: Sequence[str]) -> List[str]:
    """argv for the probe: the configured prefix plus the script as one argument."""
    script = build_probe_script(paths)
    if prefix and prefix.strip():
        return shlex.split(prefix) + [script]
    return ["sh", "-c", script]


def parse_probe_output(text: str) -> Dict[str, bool]:
    """EXISTS:/NOTEXISTS: lines -> {path: exists}. Other lines are ignored."""
    results: Dict[str, bool] = {}
    for line in text.splitlines():
        line = line.rstrip("\r")
        if line.startswith(EXISTS_PREFIX):
            results[line[len(EXISTS_PREFIX):]] = True
        elif line.startswith(NOT_EXISTS_PREFIX):
            results[line[len(NOT_EXISTS_PREFIX):]] = False
    return results


class ExistenceBatcher:
    """
    Probes batches of unresolved candidates, one probe in flight at a time.

    The circuit breaker is owned by the caller so one breaker can span every
    partition of a run.

    Example:
        batcher = ExistenceBatcher(config.probe, CircuitBreaker("probe"), logs.notfound)
        existing = await batcher.check(candidates)
    """

    def __init__(
        self,
        settings: ProbeSettings,
        breaker: Optional[CircuitBreaker] = None,
        notfound_log: Optional[SideChannelLog] = None,
    ):
        self.settings = settings
        self.breaker = breaker or CircuitBreaker("probe", PROBE_CIRCUIT_CONFIG)
        self.notfound_log = notfound_log
        # Auth failures go straight to the breaker, which logs the trip
        self.retry_config = RetryConfig.fixed(
            settings.max_attempts, settings.retry_delay_seconds, never_retry={ProbeAuthError}
        )
        self._lock = asyncio.Lock()
        self.batches_probed = 0
        self.batches_skipped = 0

    def timeout_for(self, batch_size: int) -> float:
        return min(self.settings.timeout_cap_seconds, 1 + batch_size)

    def _run_probe(self, paths: List[str]) -> Dict[str, bool]:
        cmd = build_probe_command(self.settings.command, paths)
        timeout = self.timeout_for(len(paths))
        start = time.perf_counter()

        try:
            result = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                timeout=timeout,
                check=False,
            )
        except subprocess.TimeoutExpired as e:
            raise ProbeTimeoutError(
                f"Existence probe timed out after {timeout:.0f}s",
                cause=e,
                context={"timeout_seconds": timeout, "paths_checked": len(paths)},
            ) from e
        except OSError as e:
            raise ProbeError(f"Existence probe could not start: {e}", cause=e) from e

        stderr = (result.stderr or "").strip()
        for marker in self.settings.auth_markers:
            if marker in stderr:
                raise ProbeAuthError(
                    f"Existence probe authentication failed: {stderr[:200]}",
                    context={"returncode": result.returncode},
                )

        parsed = parse_probe_output(result.stdout or "")
        missing = [p for p in paths if p not in parsed]
        if missing:
            raise ProbeError(
                f"Existence probe returned {len(parsed)}/{len(paths)} results "
                f"(returncode={result.returncode}): {stderr[:200]}",
                context={"returncode": result.returncode, "paths_checked": len(paths)},
            )

        logger.debug(
            "Probe batch completed",
            extra={
                "paths_checked": len(paths),
                "paths_existing": sum(1 for v in parsed.values() if v),
                "duration_ms": round((time.perf_counter() - start) * 1000, 2),
            },
        )
        return parsed

    async def _probe(self, paths: List[str]) -> Dict[str, bool]:
        @with_retry_async(config=self.retry_config, wrap_as=ProbeError)
        async def probe_batch() -> Dict[str, bool]:
            return await asyncio.to_thread(self._run_probe, paths)

        return await self.breaker.call_async(probe_batch)

    async def check(self, candidates: Iterable[UnresolvedCandidate]) -> List[UnresolvedCandidate]:
        """
        Probe one batch.

        Returns:
            Candidates whose server path exists; empty when the batch was
            skipped or the circuit is open.
        """
        candidates = list(candidates)
        if not candidates or not self.settings.enabled or self.breaker.is_open:
            return []

        async with self._lock:
            if self.breaker.is_open:
                return []

            paths = list(dict.fromkeys(c.server_path for c in candidates))
            try:
                results = await self._probe(paths)
            except (ProbeAuthError, CircuitOpenError):
                # Breaker has tripped and logged once
                self.batches_skipped += 1
                return []
            except ProbeError as e:
                self.batches_skipped += 1
                log_exception(
                    logger,
                    e,
                    f"Probe batch skipped after {self.settings.max_attempts} attempts",
                    level=logging.WARNING,
                    include_traceback=False,
                    paths_checked=len(paths),
                )
                return []

            self.batches_probed += 1

        existing = [c for c in candidates if results.get(c.server_path)]
        if existing and self.notfound_log is not None:
            self.notfound_log.append(c.url for c in existing)
        return existing
