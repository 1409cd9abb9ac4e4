"""StatsD instrumentation for the execution worker."""

from __future__ import annotations

import logging
import re
import socket
import threading
import time
from dataclasses import dataclass
from typing import Any, Mapping, Optional

logger = logging.getLogger(__name__)

_UNSAFE_TAG_CHARS = re.compile(r"[^a-zA-Z0-9_.-]")


def format_tags(tags: Optional[Mapping[str, Any]]) -> str:
    """Render DogStatsD ``|#key:value`` tags, dropping ``None`` values."""

    pairs = [
        f"{_UNSAFE_TAG_CHARS.sub('_', str(key))}:{_UNSAFE_TAG_CHARS.sub('_', str(value))}"
        for key, value in (tags or {}).items()
        if value is not None
    ]
    return "|#" + ",".join(pairs) if pairs else ""


@dataclass(slots=True)
class _Backoff:
    """Exponential pause applied after consecutive send failures."""

    base_seconds: float = 5.0
    max_seconds: float = 60.0
    failures: int = 0
    resume_at: float = 0.0

    def paused(self) -> bool:
        return time.monotonic() < self.resume_at

    def fail(self) -> float:
        self.failures += 1
        delay = min(self.base_seconds * 2 ** (self.failures - 1), self.max_seconds)
        self.resume_at = time.monotonic() + delay
        return delay

    def succeed(self) -> None:
        self.failures = 0
        self.resume_at = 0.0


class StatsdEmitter:
    """UDP StatsD client that never raises into the caller.

    The socket is opened on first use and dropped after an error; sends are
    skipped until the backoff window passes.
    """

    def __init__(
        self,
        *,
        host: Optional[str] = None,
        port: int = 8125,
        prefix: str = "testbay.worker",
    ) -> None:
        self._prefix = prefix.rstrip(".")
        self._address: Optional[tuple[str, int]] = (str(host), int(port)) if host else None
        self._socket: Optional[socket.socket] = None
        self._backoff = _Backoff()
        self._lock = threading.Lock()

    @property
    def enabled(self) -> bool:
        return self._address is not None

    @property
    def suspended(self) -> bool:
        return self._backoff.paused()

    def increment(
        self, metric: str, *, value: int = 1, tags: Optional[Mapping[str, Any]] = None
    ) -> None:
        self._emit(metric, value, "c", tags)

    def gauge(
        self, metric: str, *, value: float, tags: Optional[Mapping[str, Any]] = None
    ) -> None:
        self._emit(metric, value, "g", tags)

    def observe(
        self, metric: str, *, value: float, tags: Optional[Mapping[str, Any]] = None
    ) -> None:
        self._emit(metric, f"{value * 1000:.6f}", "ms", tags)

    def _emit(
        self, metric: str, value: Any, kind: str, tags: Optional[Mapping[str, Any]]
    ) -> None:
        if self._address is None:
            return
        line = f"{self._prefix}.{metric}:{value}|{kind}{format_tags(tags)}"
        with self._lock:
            if self._backoff.paused():
                return
            try:
                if self._socket is None:
                    self._socket = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
                self._socket.sendto(line.encode("utf-8"), self._address)
            except OSError as exc:
                self._drop_socket()
                delay = self._backoff.fail()
                logger.warning(
                    "StatsD send failed; pausing metrics for %.1fs: %s",
                    delay,
                    exc,
                    extra={"statsd_address": f"{self._address[0]}:{self._address[1]}"},
                )
            else:
                self._backoff.succeed()

    def _drop_socket(self) -> None:
        sock, self._socket = self._socket, None
        if sock is None:
            return
        try:
            sock.close()
        except OSError:
            logger.debug("Ignoring error while closing StatsD socket", exc_info=True)


class WorkerMetrics:
    """Named metrics recorded by the consumer, publisher and runner."""

    def __init__(self, emitter: StatsdEmitter | None = None) -> None:
        self._emitter = emitter or StatsdEmitter()

    @property
    def enabled(self) -> bool:
        return self._emitter.enabled

    def record_rejected(self, *, code: str) -> None:
        self._emitter.increment("task.rejected", tags={"code": code})

    def record_enqueued(self, *, organization_id: str, priority: int) -> None:
        self._emitter.increment("task.enqueued", tags={"organization": organization_id})
        self._emitter.gauge(
            "task.priority", value=priority, tags={"organization": organization_id}
        )

    def record_finished(
        self,
        *,
        organization_id: str,
        image: str,
        status: str,
        duration_seconds: float,
    ) -> None:
        tags = {"organization": organization_id, "image": image, "status": status}
        self._emitter.increment("task.finished", tags=tags)
        self._emitter.observe("task.duration", value=duration_seconds, tags=tags)

    def record_infra_error(self, *, organization_id: str) -> None:
        self._emitter.increment(
            "container.infra_error", tags={"organization": organization_id}
        )

    def record_channel_failure(self, *, channel: str) -> None:
        self._emitter.increment("distribution.failure", tags={"channel": channel})


__all__ = ["StatsdEmitter", "WorkerMetrics", "format_tags"]
