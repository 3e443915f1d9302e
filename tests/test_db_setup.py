import sqlite3

import pytest
from pydantic import ValidationError

from db_models import ContactDraft, LinkPrecedence
from db_setup import ContactStore
from errors import TransientStoreFailure


def soft_delete(store, contact_id):
    conn = sqlite3.connect(store.db_path)
    conn.execute("UPDATE Contact SET deletedAt = '2023-05-01T00:00:00.000000' WHERE id = ?", (contact_id,))
    conn.commit()
    conn.close()


def test_insert_assigns_ids_and_timestamps(store):
    contact = store.insert(ContactDraft(email="lorraine@hillvalley.edu"))

    assert contact.id == 1
    assert contact.is_primary
    assert contact.linkedId is None
    assert contact.createdAt == contact.updatedAt
    assert contact.deletedAt is None


def test_draft_requires_email_or_phone():
    with pytest.raises(ValidationError):
        ContactDraft()


def test_draft_link_consistency():
    with pytest.raises(ValidationError):
        ContactDraft(email="a@x.com", linkPrecedence=LinkPrecedence.SECONDARY)
    with pytest.raises(ValidationError):
        ContactDraft(email="a@x.com", linkedId=1, linkPrecedence=LinkPrecedence.PRIMARY)


def test_find_by_email_or_phone_skips_missing_predicate(store, seed):
    seed(email="doc@hillvalley.edu", minutes=1)
    seed(phone="123456", minutes=2)

    assert [c.id for c in store.find_by_email_or_phone("doc@hillvalley.edu", None)] == [1]
    assert [c.id for c in store.find_by_email_or_phone(None, "123456")] == [2]
    assert [c.id for c in store.find_by_email_or_phone("doc@hillvalley.edu", "123456")] == [1, 2]
    assert store.find_by_email_or_phone(None, None) == []


def test_queries_order_by_created_at_not_id(store, seed):
    seed(email="late@x.com", minutes=10)
    seed(email="early@x.com", phone="555", minutes=1)
    seed(phone="555", minutes=5)

    found = store.find_by_email_or_phone("late@x.com", "555")
    assert [c.id for c in found] == [2, 3, 1]
    assert [c.id for c in store.find_by_ids([1, 2, 3])] == [2, 3, 1]


def test_soft_deleted_contacts_are_invisible(store, seed):
    primary = seed(email="a@x.com", minutes=1)
    secondary = seed(email="a@x.com", phone="999", linked_id=primary.id, minutes=2)
    soft_delete(store, secondary.id)

    assert store.find_by_id(secondary.id) is None
    assert store.find_by_linked_id(primary.id) == []
    assert [c.id for c in store.find_by_email_or_phone("a@x.com", "999")] == [primary.id]
    assert [c.id for c in store.find_by_ids([primary.id, secondary.id])] == [primary.id]


def test_find_by_ids_with_no_ids(store):
    assert store.find_by_ids([]) == []


def test_update_demotes_contact(store, seed):
    old = seed(email="a@x.com", minutes=1)
    young = seed(phone="123", minutes=2)

    store.update(young.id, {"linkPrecedence": LinkPrecedence.SECONDARY, "linkedId": old.id})

    updated = store.find_by_id(young.id)
    assert updated.linkPrecedence == LinkPrecedence.SECONDARY
    assert updated.linkedId == old.id
    assert updated.updatedAt >= young.updatedAt


def test_update_rejects_other_fields(store, seed):
    contact = seed(email="a@x.com")
    with pytest.raises(ValueError):
        store.update(contact.id, {"email": "b@x.com"})


def test_update_many_by_linked_id_repoints_children(store, seed):
    survivor = seed(email="a@x.com", minutes=1)
    loser = seed(phone="123", minutes=2)
    child_one = seed(phone="123", email="c@x.com", linked_id=loser.id, minutes=3)
    child_two = seed(phone="456", linked_id=loser.id, minutes=4)

    moved = store.update_many_by_linked_id(loser.id, survivor.id)

    assert moved == 2
    assert [c.id for c in store.find_by_linked_id(survivor.id)] == [child_one.id, child_two.id]
    assert store.find_by_linked_id(loser.id) == []


def test_transaction_rolls_back_on_error(store):
    with pytest.raises(RuntimeError):
        with store.transaction():
            store.insert(ContactDraft(email="ghost@x.com"))
            raise RuntimeError("boom")

    assert store.find_by_email_or_phone("ghost@x.com", None) == []


def test_transaction_commits_and_nests(store):
    with store.transaction():
        with store.transaction():
            store.insert(ContactDraft(email="a@x.com"))
        assert store.in_transaction

    assert not store.in_transaction
    assert len(store.find_by_email_or_phone("a@x.com", None)) == 1


def test_locked_database_surfaces_transient_failure(tmp_path):
    path = str(tmp_path / "locked.db")
    store = ContactStore(path, timeout=0.05)
    store.init()

    blocker = sqlite3.connect(path, isolation_level=None)
    blocker.execute("BEGIN IMMEDIATE")
    try:
        with pytest.raises(TransientStoreFailure):
            store.insert(ContactDraft(email="a@x.com"))
        with pytest.raises(TransientStoreFailure):
            with store.transaction():
                pass
    finally:
        blocker.execute("ROLLBACK")
        blocker.close()
