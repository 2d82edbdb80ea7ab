"""
Tests for the per-loan audit log

Covers appending, validation, immutability of recorded entries and
hash-chain integrity verification.
"""

import pytest
import dataclasses
from decimal import Decimal
from datetime import datetime, date, timezone, timedelta

from loan_workflow.audit import AuditLog, AuditAction, AuditEntry, change_set, serialize_value
from loan_workflow.currency import Money, Currency
from loan_workflow.workflow import WorkflowStage
from loan_workflow.errors import AuditValidationError


T0 = datetime(2024, 1, 10, 9, 0, tzinfo=timezone.utc)


@pytest.fixture
def audit_log():
    return AuditLog()


@pytest.fixture
def populated_log(audit_log):
    audit_log.append(AuditAction.CREATED, "staff-agent-01", T0, {'application_id': 'LN00001'})
    audit_log.append(
        AuditAction.WORKFLOW_ADVANCED, "staff-agent-01", T0 + timedelta(hours=1),
        change_set({'stage': WorkflowStage.APPLICATION_SUBMITTED}, {'stage': WorkflowStage.DOCUMENTS_PENDING})
    )
    audit_log.append(
        AuditAction.REVIEWED, "staff-rm-01", T0 + timedelta(hours=2),
        {'rating': 4}, "Verified employment"
    )
    return audit_log


class TestAppend:
    """Test appending entries"""

    def test_first_entry(self, audit_log):
        entry = audit_log.append(AuditAction.CREATED, "staff-agent-01", T0, {'application_id': 'LN00001'})

        assert len(audit_log) == 1
        assert entry.sequence == 1
        assert entry.action == AuditAction.CREATED
        assert entry.actor == "staff-agent-01"
        assert entry.timestamp == T0
        assert entry.changes == {'application_id': 'LN00001'}
        assert entry.previous_hash == ""
        assert entry.verify_hash()

    def test_entries_are_chained(self, populated_log):
        entries = populated_log.entries

        assert [e.sequence for e in entries] == [1, 2, 3]
        assert entries[1].previous_hash == entries[0].current_hash
        assert entries[2].previous_hash == entries[1].current_hash
        assert populated_log.last_hash == entries[2].current_hash
        assert populated_log.latest is entries[2]

    def test_action_given_as_value(self, audit_log):
        entry = audit_log.append("payment_added", "staff-cashier-01", T0)
        assert entry.action == AuditAction.PAYMENT_ADDED

    def test_values_serialized(self, audit_log):
        entry = audit_log.append(AuditAction.UPDATED, "staff-agent-01", T0, {
            'amount': Decimal('26041.67'),
            'principal': Money(Decimal('500000'), Currency.LKR),
            'due': date(2024, 2, 5),
            'stage': WorkflowStage.ACTIVE,
        })

        assert entry.changes == {
            'amount': '26041.67',
            'principal': {'amount': '500000.00', 'currency': 'LKR'},
            'due': '2024-02-05',
            'stage': 'active',
        }

    def test_long_comments_truncated(self):
        audit_log = AuditLog(max_comment_length=10)
        entry = audit_log.append(AuditAction.UPDATED, "staff-agent-01", T0, comments="x" * 25)
        assert entry.comments == "x" * 10

    def test_change_set(self):
        assert change_set({'a': 1}, {'a': 2}, loan='LN00001') == {
            'loan': 'LN00001',
            'previous_values': {'a': 1},
            'new_values': {'a': 2},
        }
        assert change_set() == {}

    def test_serialize_nested(self):
        assert serialize_value({'items': (Decimal('1.5'), WorkflowStage.ACTIVE)}) == {
            'items': ['1.5', 'active']
        }


class TestValidation:
    """Test entries that must be refused"""

    @pytest.mark.parametrize("actor", ["", "   ", None])
    def test_actor_required(self, audit_log, actor):
        with pytest.raises(AuditValidationError):
            audit_log.append(AuditAction.UPDATED, actor, T0)
        assert len(audit_log) == 0

    def test_unknown_action(self, audit_log):
        with pytest.raises(AuditValidationError):
            audit_log.append("deleted", "staff-agent-01", T0)
        assert len(audit_log) == 0


class TestImmutability:
    """Recorded entries cannot be altered or removed"""

    def test_entry_is_frozen(self, populated_log):
        entry = populated_log.entries[0]
        with pytest.raises(dataclasses.FrozenInstanceError):
            entry.actor = "someone-else"

    def test_changes_are_copies(self, populated_log):
        entry = populated_log.entries[0]
        changes = entry.changes
        changes['application_id'] = 'LN99999'

        assert entry.changes == {'application_id': 'LN00001'}

    def test_entries_view_is_a_tuple(self, populated_log):
        assert isinstance(populated_log.entries, tuple)

    def test_no_removal_api(self, populated_log):
        for name in ('remove', 'delete', 'clear', 'pop', 'update'):
            assert not hasattr(populated_log, name)


class TestQueries:

    def test_entries_for_and_by(self, populated_log):
        assert len(populated_log.entries_for(AuditAction.WORKFLOW_ADVANCED)) == 1
        assert [e.sequence for e in populated_log.entries_by("staff-agent-01")] == [1, 2]

    def test_entries_between(self, populated_log):
        found = populated_log.entries_between(T0 + timedelta(minutes=30), T0 + timedelta(hours=2))
        assert [e.sequence for e in found] == [2, 3]


class TestIntegrity:
    """Test hash-chain verification"""

    def test_intact_chain(self, populated_log):
        result = populated_log.verify_integrity()

        assert result['valid']
        assert result['total_entries'] == 3
        assert result['hash_errors'] == []
        assert result['chain_breaks'] == []

    def test_stored_form_reloads_intact(self, populated_log):
        reloaded = AuditLog.from_list(populated_log.to_list())

        assert reloaded.verify_integrity()['valid']
        assert [e.current_hash for e in reloaded] == [e.current_hash for e in populated_log]

    def test_edited_entry_detected(self, populated_log):
        stored = populated_log.to_list()
        stored[0]['changes']['application_id'] = 'LN99999'

        result = AuditLog.from_list(stored).verify_integrity()

        assert not result['valid']
        assert result['hash_errors'][0]['position'] == 0

    def test_removed_entry_detected(self, populated_log):
        stored = populated_log.to_list()
        del stored[1]

        result = AuditLog.from_list(stored).verify_integrity()

        assert not result['valid']
        assert result['chain_breaks'][0]['position'] == 1

    def test_tampered_actor_detected(self, populated_log):
        tampered = dataclasses.replace(populated_log.entries[2], actor="someone-else")
        log = AuditLog(list(populated_log.entries[:2]) + [tampered])

        assert not log.verify_integrity()['valid']
        assert not tampered.verify_hash()
        assert isinstance(tampered, AuditEntry)
