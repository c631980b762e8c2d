from task_access import ANONYMOUS_SUBJECT
from task_access import OP_READ
from task_access import OP_WRITE
from task_access import Subject
from task_access import can_access
from task_access import can_list
from task_access import subject_from


def test_owner_can_read_and_write_own_record():
    alice = Subject("alice")
    record = {"id": "t1", "ownerId": "alice"}
    assert can_access(alice, record, OP_READ)
    assert can_access(alice, record, OP_WRITE)


def test_non_owner_is_denied():
    assert not can_access(Subject("bob"), {"id": "t1", "ownerId": "alice"}, OP_WRITE)


def test_admin_sees_every_record():
    assert can_access(Subject("root", is_admin=True), {"id": "t1", "ownerId": "alice"}, OP_WRITE)


def test_record_without_owner_is_open():
    assert can_access(Subject("bob"), {"id": "legacy"})
    assert can_access(Subject("bob"), {"id": "legacy", "ownerId": ""})


def test_list_scope_follows_admin_flag():
    assert can_list(Subject("alice")).owner_id == "alice"
    assert can_list(Subject("alice")).scoped
    assert not can_list(Subject("root", is_admin=True)).scoped


def test_subject_from_defaults_to_anonymous():
    subject = subject_from(None)
    assert subject.subject_id == ANONYMOUS_SUBJECT
    assert subject.is_anonymous
    assert not subject.is_admin


def test_anonymous_listing_is_scoped_to_the_sentinel():
    scope = can_list(subject_from("  "))
    assert scope.owner_id == ANONYMOUS_SUBJECT
