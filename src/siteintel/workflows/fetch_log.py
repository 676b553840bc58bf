"""Fetch-log and artifact records plus the sinks that receive them.

Every network attempt produces one :class:`FetchLogRecord`; the homepage
snapshot produces size-capped :class:`ArtifactRecord` entries. Storage is
owned by whoever supplies the sink.
"""

from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from .web_fetch import FetchResult

logger = logging.getLogger(__name__)

FETCH_LOG_FILENAME = "fetch_log.jsonl"
ARTIFACTS_FILENAME = "artifacts.jsonl"


def _now_iso() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z")


@dataclass
class FetchLogRecord:
    scan_id: Optional[str]
    url: str
    method: str
    status_code: Optional[int]
    content_type: Optional[str]
    content_length: Optional[int]
    fetch_duration_ms: int
    error_message: Optional[str]
    robots_allowed: bool
    source: str
    logged_at: str = field(default_factory=_now_iso)

    @classmethod
    def from_result(cls, scan_id: Optional[str], result: FetchResult, source: str) -> "FetchLogRecord":
        content_length = result.content_length
        if content_length is None and result.content is not None:
            content_length = len(result.content)
        return cls(
            scan_id=scan_id,
            url=result.url,
            method="GET",
            status_code=result.status_code,
            content_type=result.content_type,
            content_length=content_length,
            fetch_duration_ms=result.fetch_duration_ms,
            error_message=result.error_message,
            robots_allowed=result.robots_allowed,
            source=source,
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ArtifactRecord:
    scan_id: str
    url: str
    type: str
    snippet: str
    content_type: str
    fetched_at: str = field(default_factory=_now_iso)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class FetchSink:
    """Receiver for fetch-log and artifact records. Subclasses override both hooks."""

    def record_fetch(self, record: FetchLogRecord) -> None:
        raise NotImplementedError

    def record_artifact(self, record: ArtifactRecord) -> None:
        raise NotImplementedError


class MemorySink(FetchSink):
    def __init__(self) -> None:
        self.fetches: List[FetchLogRecord] = []
        self.artifacts: List[ArtifactRecord] = []

    def record_fetch(self, record: FetchLogRecord) -> None:
        self.fetches.append(record)

    def record_artifact(self, record: ArtifactRecord) -> None:
        # One artifact per (scan, type); a re-run replaces the earlier snippet.
        self.artifacts = [
            a for a in self.artifacts if not (a.scan_id == record.scan_id and a.type == record.type)
        ]
        self.artifacts.append(record)

    def fetches_for(self, url: str) -> List[FetchLogRecord]:
        return [r for r in self.fetches if r.url == url]


class JsonlSink(FetchSink):
    """Append records as JSON lines under ``directory``."""

    def __init__(self, directory: Path) -> None:
        self.directory = Path(directory)
        self.fetch_log_path = self.directory / FETCH_LOG_FILENAME
        self.artifacts_path = self.directory / ARTIFACTS_FILENAME

    def _append(self, path: Path, payload: Dict[str, Any]) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        with path.open("a", encoding="utf-8") as fh:
            fh.write(json.dumps(payload, ensure_ascii=False) + "\n")

    def record_fetch(self, record: FetchLogRecord) -> None:
        self._append(self.fetch_log_path, record.to_dict())

    def record_artifact(self, record: ArtifactRecord) -> None:
        self._append(self.artifacts_path, record.to_dict())


class FanoutSink(FetchSink):
    """Forward every record to several sinks."""

    def __init__(self, *sinks: FetchSink) -> None:
        self.sinks = list(sinks)

    def record_fetch(self, record: FetchLogRecord) -> None:
        for sink in self.sinks:
            sink.record_fetch(record)

    def record_artifact(self, record: ArtifactRecord) -> None:
        for sink in self.sinks:
            sink.record_artifact(record)


def log_fetch(sink: Optional[FetchSink], scan_id: Optional[str], result: FetchResult, source: str) -> None:
    """Write one fetch-log record; sink failures are logged and dropped."""

    if sink is None:
        return
    try:
        sink.record_fetch(FetchLogRecord.from_result(scan_id, result, source))
    except Exception as exc:  # sink errors must not break acquisition
        logger.debug("fetch-log write failed for %s: %s", result.url, exc)


def load_jsonl(path: Path) -> List[Dict[str, Any]]:
    rows: List[Dict[str, Any]] = []
    if not path.exists():
        return rows
    with path.open("r", encoding="utf-8") as fh:
        for line in fh:
            line = line.strip()
            if not line:
                continue
            try:
                rows.append(json.loads(line))
            except json.JSONDecodeError:
                raise ValueError(f"Invalid JSON line in {path}: {line[:80]}") from None
    return rows


__all__ = [
    "ArtifactRecord",
    "FanoutSink",
    "FetchLogRecord",
    "FetchSink",
    "JsonlSink",
    "MemorySink",
    "load_jsonl",
    "log_fetch",
]
