"""
Hash chain computation and verification.

Each persisted entry stores the hash it was chained from (`previous_hash`)
and its own `hash_chain = SHA256_hex(previous_hash || canonical_json)`.
The head of the chain lives in the datastore and is read under a row lock
immediately before each append, so the datastore is the only source of
the previous hash.

Retention cleanup deletes runs of old low-risk entries. For every deleted
run it writes a RetentionCheckpoint recording the hash the run started
from and the hash it ended with, which lets verification bridge exactly
that gap and nothing else.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from nacl.signing import SigningKey

from audit_ledger.crypto import (
    canonicalize_event,
    compute_chain_hash,
    compute_sha256_hex,
    constant_time_compare,
    sign_message,
    verify_key_hex,
    verify_message,
)
from audit_ledger.events import AuditEvent, format_timestamp, utc_now
from audit_ledger.models import ChainVerificationResult

logger = logging.getLogger(__name__)

GENESIS_HASH = "0"


def next_hash(previous_hash: str, event: AuditEvent) -> str:
    """Compute the chain hash for `event` appended after `previous_hash`."""
    return compute_chain_hash(previous_hash, event.canonical_json())


# ============================================================================
# Retention checkpoints
# ============================================================================

@dataclass
class RetentionCheckpoint:
    """Record of one contiguous run of entries removed by retention cleanup."""

    gap_start_hash: str
    gap_end_hash: str
    first_deleted_id: int
    last_deleted_id: int
    deleted_count: int
    created_at: datetime = field(default_factory=utc_now)
    checkpoint_hash: str = ""
    signature: Optional[str] = None
    verify_key: Optional[str] = None
    id: Optional[int] = None

    @classmethod
    def for_run(
        cls,
        run: Sequence[AuditEvent],
        signing_key: Optional[SigningKey] = None
    ) -> "RetentionCheckpoint":
        """Build and finalize the checkpoint covering a run of sealed entries."""
        if not run:
            raise ValueError("Cannot checkpoint an empty run")
        checkpoint = cls(
            gap_start_hash=run[0].previous_hash,
            gap_end_hash=run[-1].hash_chain,
            first_deleted_id=run[0].entry_id,
            last_deleted_id=run[-1].entry_id,
            deleted_count=len(run),
        )
        checkpoint.finalize(signing_key)
        return checkpoint

    @classmethod
    def from_record(cls, record: Mapping[str, Any]) -> "RetentionCheckpoint":
        return cls(
            id=record.get("id"),
            gap_start_hash=record["gap_start_hash"],
            gap_end_hash=record["gap_end_hash"],
            first_deleted_id=record["first_deleted_id"],
            last_deleted_id=record["last_deleted_id"],
            deleted_count=record["deleted_count"],
            created_at=record["created_at"],
            checkpoint_hash=record["checkpoint_hash"],
            signature=record.get("signature"),
            verify_key=record.get("verify_key"),
        )

    def canonical_json(self) -> str:
        return canonicalize_event({
            "gap_start_hash": self.gap_start_hash,
            "gap_end_hash": self.gap_end_hash,
            "first_deleted_id": self.first_deleted_id,
            "last_deleted_id": self.last_deleted_id,
            "deleted_count": self.deleted_count,
            "created_at": format_timestamp(self.created_at),
        })

    def compute_hash(self) -> str:
        return compute_sha256_hex(self.canonical_json().encode('utf-8'))

    def finalize(self, signing_key: Optional[SigningKey] = None) -> None:
        self.checkpoint_hash = self.compute_hash()
        if signing_key is not None:
            self.signature = sign_message(self.checkpoint_hash.encode('utf-8'), signing_key)
            self.verify_key = verify_key_hex(signing_key)

    def is_valid(self, trusted_verify_key: Optional[str] = None) -> bool:
        """
        Check the checkpoint's own digest and, where present, its signature.

        When `trusted_verify_key` is given, an unsigned checkpoint or one
        signed by another key is rejected.
        """
        if not constant_time_compare(self.checkpoint_hash, self.compute_hash()):
            return False

        key = trusted_verify_key or self.verify_key
        if trusted_verify_key and not self.signature:
            return False
        if self.signature:
            if not key:
                return False
            return verify_message(self.checkpoint_hash.encode('utf-8'), self.signature, key)
        return True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "gap_start_hash": self.gap_start_hash,
            "gap_end_hash": self.gap_end_hash,
            "first_deleted_id": self.first_deleted_id,
            "last_deleted_id": self.last_deleted_id,
            "deleted_count": self.deleted_count,
            "created_at": format_timestamp(self.created_at),
            "checkpoint_hash": self.checkpoint_hash,
            "signed": self.signature is not None,
        }


# ============================================================================
# Verification
# ============================================================================

def _bridge(start: str, target: str, bridges: Mapping[str, RetentionCheckpoint]) -> int:
    """
    Follow checkpoints from `start` until `target` is reached.

    Successive retention runs can leave adjacent gaps, so one missing
    stretch may be covered by several checkpoints.

    Returns:
        Number of checkpoints crossed, or 0 if no path exists
    """
    hops = 0
    current = start
    seen = set()
    while current != target:
        checkpoint = bridges.get(current)
        if checkpoint is None or current in seen:
            return 0
        seen.add(current)
        current = checkpoint.gap_end_hash
        hops += 1
    return hops


def verify_chain(
    entries: Sequence[AuditEvent],
    checkpoints: Iterable[RetentionCheckpoint] = (),
    anchor: Optional[str] = GENESIS_HASH,
    trusted_verify_key: Optional[str] = None
) -> ChainVerificationResult:
    """
    Recompute the chain over `entries` (in persistence order).

    The running hash starts at `anchor`; pass None to trust the first
    entry's stored `previous_hash` (verification of a recent window).
    Recomputed hashes, not stored ones, are carried forward, so altering
    one entry invalidates it and every entry after it.

    Args:
        entries: Sealed events ordered by ledger id
        checkpoints: Retention checkpoints that may bridge deletion gaps
        anchor: Hash the first entry must chain from
        trusted_verify_key: Require checkpoints signed by this key

    Returns:
        ChainVerificationResult describing the outcome
    """
    bridges: Dict[str, RetentionCheckpoint] = {}
    for checkpoint in checkpoints:
        if checkpoint.is_valid(trusted_verify_key):
            bridges[checkpoint.gap_start_hash] = checkpoint
        else:
            logger.warning(f"Ignoring invalid retention checkpoint id={checkpoint.id}")

    if not entries:
        return ChainVerificationResult(
            is_valid=True,
            entries_checked=0,
            anchor_hash=anchor,
            head_hash=anchor,
        )

    running = anchor if anchor is not None else entries[0].previous_hash
    anchor_hash = running
    invalid: List[int] = []
    messages: List[str] = []
    gaps_bridged = 0

    for entry in entries:
        if entry.previous_hash != running:
            hops = _bridge(running, entry.previous_hash, bridges)
            if hops:
                gaps_bridged += hops
                running = entry.previous_hash
            else:
                invalid.append(entry.entry_id)
                messages.append(f"Chain link broken at entry {entry.entry_id}")

        try:
            computed = next_hash(running, entry)
        except (TypeError, ValueError) as e:
            computed = ""
            messages.append(f"Entry {entry.entry_id} cannot be serialized: {e}")

        if not constant_time_compare(computed, entry.hash_chain or ""):
            if entry.entry_id not in invalid:
                invalid.append(entry.entry_id)
                messages.append(f"Chain hash mismatch at entry {entry.entry_id}")

        running = computed

    return ChainVerificationResult(
        is_valid=not invalid,
        entries_checked=len(entries),
        first_invalid_entry_id=invalid[0] if invalid else None,
        invalid_entry_ids=invalid,
        gaps_bridged=gaps_bridged,
        anchor_hash=anchor_hash,
        head_hash=running,
        error_message=messages[0] if messages else None,
    )
