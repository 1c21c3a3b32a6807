"""
Override Audit Module

Hash-chained, append-only log of admin approvals that bypassed failed
eligibility rules. Entries are written inside the approval transaction, so an
override is either fully recorded with its approval or not at all.
"""

import hashlib
import json
from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Dict, List, Optional, Any
import logging

from .errors import ValidationError
from .models import OverrideAuditEntry, new_id
from .storage import StorageInterface, StorageTransaction


logger = logging.getLogger(__name__)


def calculate_entry_hash(entry: OverrideAuditEntry) -> str:
    """
    Calculate SHA-256 hash of an entry.
    Hash includes all fields except current_hash to prevent circular reference
    """
    hash_data = {
        'id': entry.id,
        'sequence': entry.sequence,
        'admin_id': entry.admin_id,
        'member_id': entry.member_id,
        'loan_id': entry.loan_id,
        'failed_rules': list(entry.failed_rules),
        'reason': entry.reason,
        'timestamp': entry.timestamp.astimezone(timezone.utc).isoformat(timespec='microseconds'),
        'previous_hash': entry.previous_hash,
    }

    # Create deterministic JSON string
    json_data = json.dumps(hash_data, sort_keys=True, separators=(',', ':'))
    return hashlib.sha256(json_data.encode('utf-8')).hexdigest()


@dataclass
class AuditFilter:
    """Query filter for override audit entries; unset fields match everything"""
    admin_id: Optional[str] = None
    member_id: Optional[str] = None
    loan_id: Optional[str] = None
    owner_admin_id: Optional[str] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    limit: Optional[int] = None


class OverrideAuditLog:
    """
    Append-only override audit trail with hash chaining for tamper detection
    """

    def __init__(self, storage: StorageInterface):
        self.storage = storage

    def record_override(self, txn: StorageTransaction, admin_id: str, member_id: str,
                        loan_id: str, failed_rules: List[str], reason: str,
                        timestamp: Optional[datetime] = None) -> OverrideAuditEntry:
        """
        Append an override entry inside the caller's transaction

        Args:
            txn: The approval transaction
            admin_id: Admin who approved despite failed rules
            member_id: Borrowing member
            loan_id: Approved loan
            failed_rules: Every failed rule id, in evaluation order
            reason: Admin-supplied justification, must not be blank
            timestamp: Entry time, defaults to now

        Returns:
            Created OverrideAuditEntry
        """
        if not reason or not reason.strip():
            raise ValidationError("An override reason is required")
        if not failed_rules:
            raise ValidationError("An override entry must list the failed rules it bypassed")

        # Serialize appenders so sequence and previous_hash are read consistently
        txn.lock_audit_chain()
        last = txn.last_audit_entry()

        entry = OverrideAuditEntry(
            id=new_id(),
            sequence=(last.sequence + 1) if last else 1,
            admin_id=admin_id,
            member_id=member_id,
            loan_id=loan_id,
            failed_rules=list(failed_rules),
            reason=reason.strip(),
            timestamp=timestamp or datetime.now(timezone.utc),
            previous_hash=last.current_hash if last else "",
        )
        entry.current_hash = calculate_entry_hash(entry)
        txn.insert_audit_entry(entry)

        logger.warning(
            f"Admin override recorded: admin {admin_id} approved loan {loan_id} "
            f"for member {member_id} despite failed rules {entry.failed_rules}"
        )
        return entry

    def list_entries(self, audit_filter: Optional[AuditFilter] = None) -> List[OverrideAuditEntry]:
        """Entries matching the filter in chain order (oldest first)"""
        audit_filter = audit_filter or AuditFilter()
        with self.storage.atomic(write=False) as txn:
            return txn.find_audit_entries(
                admin_id=audit_filter.admin_id,
                member_id=audit_filter.member_id,
                loan_id=audit_filter.loan_id,
                owner_admin_id=audit_filter.owner_admin_id,
                start_time=audit_filter.start_time,
                end_time=audit_filter.end_time,
                limit=audit_filter.limit,
            )

    def count_entries(self) -> int:
        return len(self.list_entries())

    def verify_integrity(self) -> Dict[str, Any]:
        """
        Verify the integrity of the entire override chain

        Returns:
            Dictionary with integrity check results
        """
        result = {
            'valid': True,
            'total_entries': 0,
            'hash_errors': [],
            'chain_breaks': [],
            'details': {}
        }

        entries = self.list_entries()
        if not entries:
            return result

        result['total_entries'] = len(entries)

        # Verify each entry's hash
        for i, entry in enumerate(entries):
            expected_hash = calculate_entry_hash(entry)
            if entry.current_hash != expected_hash:
                result['valid'] = False
                result['hash_errors'].append({
                    'entry_id': entry.id,
                    'position': i,
                    'expected_hash': expected_hash,
                    'actual_hash': entry.current_hash
                })

        # Verify chain continuity
        previous_hash = ""
        for i, entry in enumerate(entries):
            if entry.previous_hash != previous_hash:
                result['valid'] = False
                result['chain_breaks'].append({
                    'entry_id': entry.id,
                    'position': i,
                    'expected_previous_hash': previous_hash,
                    'actual_previous_hash': entry.previous_hash
                })
            previous_hash = entry.current_hash

        result['details'] = {
            'first_entry_time': entries[0].timestamp.isoformat(),
            'last_entry_time': entries[-1].timestamp.isoformat(),
            'admins': sorted(set(e.admin_id for e in entries)),
        }

        if not result['valid']:
            logger.error(
                f"Override audit chain failed verification: {len(result['hash_errors'])} hash errors, "
                f"{len(result['chain_breaks'])} chain breaks"
            )
        return result
