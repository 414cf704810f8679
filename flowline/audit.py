"""Append-only audit log.

Records are written through the caller's transaction so a transition and
its audit entry commit together. Each record is chained to its predecessor
with a SHA-256 hash, which makes tampering detectable by :meth:`verify`.
Records are never updated; the only removal path is :meth:`archive`, which
moves a whole leading range of sequence numbers to the archive table.
"""

from __future__ import annotations

import hashlib
import json
import logging
from typing import Any, Dict, List, Optional

from .clock import Clock, IdGenerator
from .models import AuditRecord
from .persistence.repository import AUDIT, AUDIT_ARCHIVE, AUDIT_BY_SUBJECT, COUNTERS, Repository
from .persistence.store import Store

logger = logging.getLogger(__name__)

GENESIS_HASH = "0" * 64
_HEAD = "audit_head"


def _seq_key(seq: int) -> str:
    return f"{seq:012d}"


def compute_record_hash(previous_hash: str, record: AuditRecord) -> str:
    body = record.model_dump(mode="json", exclude={"hash", "previous_hash"})
    content = previous_hash + "|" + json.dumps(body, sort_keys=True, default=str)
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


class AuditLog:
    """Writes and reads immutable audit records."""

    def __init__(self, store: Store, clock: Clock, ids: IdGenerator) -> None:
        self.store = store
        self.clock = clock
        self.ids = ids

    async def append(
        self,
        repo: Repository,
        event_kind: str,
        subject_id: str,
        subject_type: str,
        *,
        before: Optional[Dict[str, Any]] = None,
        after: Optional[Dict[str, Any]] = None,
        actor_id: Optional[str] = None,
        severity: str = "info",
        data: Optional[Dict[str, Any]] = None,
    ) -> AuditRecord:
        """Append one record inside the transaction behind ``repo``."""

        head = await repo.tx.get(COUNTERS, _HEAD, for_update=True)
        seq = (head.data["seq"] if head else 0) + 1
        previous_hash = head.data["hash"] if head else GENESIS_HASH

        record = AuditRecord(
            id=self.ids.new_id(),
            seq=seq,
            event_kind=event_kind,
            subject_id=subject_id,
            subject_type=subject_type,
            actor_id=actor_id,
            before=before,
            after=after,
            at=self.clock.now_ms(),
            severity=severity,
            data=data or {},
            previous_hash=previous_hash,
        )
        record.hash = compute_record_hash(previous_hash, record)

        data_row = record.model_dump(mode="json")
        await repo.tx.put(AUDIT, _seq_key(seq), data_row, expected_version=0)
        await repo.tx.put(
            AUDIT_BY_SUBJECT, f"{subject_id}/{_seq_key(seq)}", {"seq": seq}, expected_version=0
        )
        await repo.tx.put(
            COUNTERS,
            _HEAD,
            {"seq": seq, "hash": record.hash},
            expected_version=head.version if head else 0,
        )
        logger.debug(f"Audit {seq} {event_kind} {subject_type}:{subject_id}")
        return record

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def history(self, subject_id: str) -> List[AuditRecord]:
        """Records for ``subject_id`` in commit order."""
        async with self.store.transaction() as tx:
            refs = await tx.range(AUDIT_BY_SUBJECT, f"{subject_id}/")
            records = []
            for ref in refs:
                row = await tx.get(AUDIT, _seq_key(ref.data["seq"]))
                if row is not None:
                    records.append(AuditRecord.model_validate(row.data))
            return records

    async def records(self, limit: Optional[int] = None) -> List[AuditRecord]:
        rows = await self.store.range(AUDIT, limit=limit)
        return [AuditRecord.model_validate(row.data) for row in rows]

    async def verify(self) -> bool:
        """Check the hash chain over the live (unarchived) records."""
        records = await self.records()
        if not records:
            return True
        previous_hash = records[0].previous_hash
        for record in records:
            if record.previous_hash != previous_hash:
                logger.warning(f"Audit chain broken before seq {record.seq}")
                return False
            if compute_record_hash(previous_hash, record) != record.hash:
                logger.warning(f"Audit record {record.seq} hash mismatch")
                return False
            previous_hash = record.hash
        return True

    # ------------------------------------------------------------------
    # Retention
    # ------------------------------------------------------------------

    async def archive(self, before_at: int) -> int:
        """Move every record older than ``before_at`` to the archive table.

        Only a leading range of sequence numbers is moved, so the live log
        always remains a contiguous suffix of the chain.
        """

        moved = 0
        async with self.store.transaction() as tx:
            for row in await tx.range(AUDIT):
                record = AuditRecord.model_validate(row.data)
                if record.at >= before_at:
                    break
                await tx.put(AUDIT_ARCHIVE, row.key, row.data, expected_version=0)
                await tx.delete(AUDIT, row.key)
                await tx.delete(AUDIT_BY_SUBJECT, f"{record.subject_id}/{row.key}")
                moved += 1
        if moved:
            logger.info(f"Archived {moved} audit records older than {before_at}")
        return moved
