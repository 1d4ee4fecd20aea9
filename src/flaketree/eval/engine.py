"""Query engine: runs evaluator processes with debounce, cancellation and timeout.

Design:
- One asyncio task per logical key; a new request for the same key cancels
  the previous task (SIGTERM to its process, or simply never spawning it
  if it is still inside its debounce window)
- Last request wins: a result is only handed back as successful while its
  request is still the current one for its key
- Every run has a hard timeout; expiry terminates the process
- Failures are returned as values, never raised
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import shlex
import time
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import structlog

from flaketree.eval.models import (
    EvalErrorKind,
    QueryKey,
    QueryResult,
    QuerySpec,
)

if TYPE_CHECKING:
    from flaketree.config.models import EvaluatorConfig

logger = structlog.get_logger()

DEFAULT_TIMEOUT_SEC = 30.0
DEFAULT_TERMINATE_GRACE_SEC = 2.0


@dataclass
class _PendingQuery:
    key: QueryKey
    task: asyncio.Task[QueryResult]
    generation: int


@dataclass
class EngineStatus:
    """Counters since the engine was created."""

    active: int
    spawned: int = 0
    succeeded: int = 0
    failed: int = 0
    timed_out: int = 0
    cancelled: int = 0
    active_keys: list[str] = field(default_factory=list)


def _parse_payload(stdout: str) -> Any:
    """Structured data when the output is JSON, raw text otherwise."""
    text = stdout.strip()
    if not text:
        return None
    try:
        return json.loads(text)
    except ValueError:
        return text


class QueryEngine:
    def __init__(
        self,
        executable: str = "nix",
        extra_args: Sequence[str] = (),
        experimental_features: Sequence[str] = (),
        timeout: float = DEFAULT_TIMEOUT_SEC,
        terminate_grace: float = DEFAULT_TERMINATE_GRACE_SEC,
    ) -> None:
        self.executable = executable
        self.extra_args = list(extra_args)
        self.experimental_features = list(experimental_features)
        self.timeout = timeout
        self.terminate_grace = terminate_grace

        self._pending: dict[QueryKey, _PendingQuery] = {}
        self._generation = 0
        self._status = EngineStatus(active=0)

    @classmethod
    def from_config(cls, config: EvaluatorConfig) -> QueryEngine:
        return cls(
            executable=config.executable,
            extra_args=config.extra_args,
            experimental_features=config.experimental_features,
            timeout=config.timeout_sec,
            terminate_grace=config.terminate_grace_sec,
        )

    def build_command(self, spec: QuerySpec) -> list[str]:
        cmd = [self.executable]
        if self.experimental_features:
            cmd += ["--extra-experimental-features", " ".join(self.experimental_features)]
        cmd += self.extra_args
        cmd += spec.args
        return cmd

    @property
    def active_keys(self) -> list[QueryKey]:
        return list(self._pending)

    @property
    def status(self) -> EngineStatus:
        self._status.active = len(self._pending)
        self._status.active_keys = [str(k) for k in self._pending]
        return self._status

    async def execute(
        self,
        key: QueryKey,
        spec: QuerySpec,
        debounce_ms: int = 0,
    ) -> QueryResult:
        """Run ``spec`` under ``key``, superseding any earlier request for ``key``.

        Returns a CANCELLED result if a newer request for the same key
        arrives before this one completes.
        """
        self.cancel(key)

        self._generation += 1
        task = asyncio.create_task(
            self._run(key, spec, debounce_ms / 1000.0),
            name=f"query:{key}",
        )
        pending = _PendingQuery(key=key, task=task, generation=self._generation)
        self._pending[key] = pending

        try:
            try:
                result = await task
            except asyncio.CancelledError:
                current = asyncio.current_task()
                if current is not None and current.cancelling():
                    # The caller itself is being cancelled
                    raise
                return self._superseded(key)

            if self._pending.get(key) is not pending:
                return self._superseded(key)
            return result
        finally:
            if self._pending.get(key) is pending:
                del self._pending[key]

    def _superseded(self, key: QueryKey) -> QueryResult:
        self._status.cancelled += 1
        logger.debug("query_cancelled", key=str(key))
        return QueryResult.failure(key, EvalErrorKind.CANCELLED, "Superseded by a newer request")

    def cancel(self, key: QueryKey) -> bool:
        """Cancel the running or debounced request for ``key``, if any."""
        pending = self._pending.pop(key, None)
        if pending is None:
            return False
        if not pending.task.done():
            pending.task.cancel()
        logger.debug("query_cancel_requested", key=str(key), generation=pending.generation)
        return True

    def cancel_all(self) -> int:
        """Cancel every in-flight or debounced request. Returns how many."""
        keys = list(self._pending)
        for key in keys:
            self.cancel(key)
        if keys:
            logger.info("queries_cancelled", count=len(keys))
        return len(keys)

    async def _run(self, key: QueryKey, spec: QuerySpec, debounce_sec: float) -> QueryResult:
        if debounce_sec > 0:
            await asyncio.sleep(debounce_sec)

        cmd = self.build_command(spec)
        timeout = spec.timeout or self.timeout
        start = time.monotonic()
        logger.info("query_started", key=str(key), command=shlex.join(cmd))

        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=spec.cwd,
            )
        except OSError as e:
            self._status.failed += 1
            logger.error("query_spawn_failed", key=str(key), executable=cmd[0], error=str(e))
            return QueryResult.failure(
                key,
                EvalErrorKind.SPAWN_FAILED,
                f"Failed to start {cmd[0]}: {e}",
                command=tuple(cmd),
            )
        self._status.spawned += 1

        try:
            async with asyncio.timeout(timeout):
                stdout_bytes, stderr_bytes = await proc.communicate()
        except TimeoutError:
            await self._terminate(proc)
            self._status.timed_out += 1
            logger.warning("query_timeout", key=str(key), timeout=timeout)
            return QueryResult.failure(
                key,
                EvalErrorKind.TIMEOUT,
                f"Command timed out after {timeout:g}s",
                duration_sec=time.monotonic() - start,
                command=tuple(cmd),
            )
        except asyncio.CancelledError:
            await self._terminate(proc)
            raise

        duration = time.monotonic() - start
        stdout = stdout_bytes.decode(errors="replace")
        stderr = stderr_bytes.decode(errors="replace")

        if proc.returncode != 0:
            self._status.failed += 1
            message = stderr.strip() or f"Exit code {proc.returncode}"
            logger.warning(
                "query_failed",
                key=str(key),
                returncode=proc.returncode,
                error=message[:500],
            )
            return QueryResult.failure(
                key,
                EvalErrorKind.EVALUATION_FAILED,
                message,
                duration_sec=duration,
                command=tuple(cmd),
            )

        self._status.succeeded += 1
        logger.info("query_succeeded", key=str(key), duration=round(duration, 3))
        return QueryResult.success(
            key,
            _parse_payload(stdout),
            duration_sec=duration,
            command=tuple(cmd),
        )

    async def _terminate(self, proc: asyncio.subprocess.Process) -> None:
        """SIGTERM, then SIGKILL if the process outlives the grace period."""
        if proc.returncode is not None:
            return
        with contextlib.suppress(ProcessLookupError):
            proc.terminate()
        try:
            await asyncio.wait_for(proc.wait(), timeout=self.terminate_grace)
        except TimeoutError:
            with contextlib.suppress(ProcessLookupError):
                proc.kill()
            await proc.wait()
        logger.debug("query_process_terminated", pid=proc.pid, returncode=proc.returncode)
