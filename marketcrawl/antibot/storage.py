"""Operator channel: saved challenge pages and the decisions made on them."""
from __future__ import annotations

import asyncio
import hashlib
import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

import orjson

LOGGER = logging.getLogger(__name__)


class OperatorDecision(str, Enum):
    PENDING = "pending"
    RESOLVED = "resolved"
    SKIP = "skip"


@dataclass
class ChallengeRecord:
    """Metadata stored next to a saved challenge page."""

    key: str
    source: str
    url: str
    status_code: Optional[int]
    kind: str
    reason: str
    status: OperatorDecision = OperatorDecision.PENDING
    created_at: str = ""
    decided_at: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> ChallengeRecord:
        values = dict(data)
        values["status"] = OperatorDecision(values.get("status", "pending"))
        return cls(**values)


def challenge_key(source: str, url: str) -> str:
    """Stable file key for the challenge seen on ``url``."""
    digest = hashlib.sha1(url.encode("utf-8")).hexdigest()[:16]
    return f"{source}-{digest}"


class ChallengeStore:
    """Directory of ``<key>.html`` pages and ``<key>.json`` metadata.

    The crawler writes a pending record and polls it; an operator flips the
    status to ``resolved`` or ``skip`` through the CLI.
    """

    def __init__(self, directory: Path | str, *, poll_interval: float = 2.0) -> None:
        self.directory = Path(directory)
        self.poll_interval = poll_interval

    def html_path(self, key: str) -> Path:
        return self.directory / f"{key}.html"

    def meta_path(self, key: str) -> Path:
        return self.directory / f"{key}.json"

    def save(
        self,
        *,
        source: str,
        url: str,
        body: str,
        status_code: Optional[int],
        kind: str,
        reason: str,
    ) -> ChallengeRecord:
        """Persist the challenge page and a pending decision for it."""
        self.directory.mkdir(parents=True, exist_ok=True)
        key = challenge_key(source, url)
        record = ChallengeRecord(
            key=key,
            source=source,
            url=url,
            status_code=status_code,
            kind=kind,
            reason=reason,
            created_at=_now(),
        )
        self.html_path(key).write_text(body, encoding="utf-8")
        self._write_meta(record)
        LOGGER.warning("Challenge page saved for operator review: %s (%s)", key, url)
        return record

    def load(self, key: str) -> Optional[ChallengeRecord]:
        path = self.meta_path(key)
        if not path.exists():
            return None
        try:
            return ChallengeRecord.from_dict(orjson.loads(path.read_bytes()))
        except (orjson.JSONDecodeError, TypeError, ValueError) as exc:
            LOGGER.warning("Unreadable challenge metadata %s: %s", path, exc)
            return None

    def list_challenges(self, *, pending_only: bool = False) -> List[ChallengeRecord]:
        if not self.directory.exists():
            return []
        records = []
        for path in sorted(self.directory.glob("*.json")):
            record = self.load(path.stem)
            if record is None:
                continue
            if pending_only and record.status is not OperatorDecision.PENDING:
                continue
            records.append(record)
        return records

    def decide(self, key: str, decision: OperatorDecision) -> ChallengeRecord:
        """Record the operator's decision; raises ``KeyError`` for an unknown key."""
        if decision is OperatorDecision.PENDING:
            raise ValueError("decision must be resolved or skip")
        record = self.load(key)
        if record is None:
            raise KeyError(key)
        record.status = decision
        record.decided_at = _now()
        self._write_meta(record)
        LOGGER.info("Challenge %s marked %s", key, decision.value)
        return record

    async def wait_for_decision(self, key: str, *, timeout: Optional[float] = None) -> OperatorDecision:
        """Poll until the operator decides; ``PENDING`` is returned on timeout.

        Cancelling the awaiting task stops the wait immediately.
        """
        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + timeout
        while True:
            record = await asyncio.to_thread(self.load, key)
            if record is not None and record.status is not OperatorDecision.PENDING:
                return record.status
            if deadline is not None and loop.time() >= deadline:
                return OperatorDecision.PENDING
            await asyncio.sleep(self.poll_interval)

    def _write_meta(self, record: ChallengeRecord) -> None:
        path = self.meta_path(record.key)
        tmp = path.with_suffix(".json.tmp")
        tmp.write_bytes(orjson.dumps(record.to_dict(), option=orjson.OPT_INDENT_2))
        tmp.replace(path)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()
