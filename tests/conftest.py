from datetime import datetime, timedelta

import pytest

from db_models import ContactDraft, LinkPrecedence
from db_setup import ContactStore
from resolver import IdentityLocks, IdentityResolver

BASE_TIME = datetime(2023, 4, 1, 0, 0, 0)


@pytest.fixture
def store(tmp_path):
    contact_store = ContactStore(str(tmp_path / "contacts.db"), timeout=1.0)
    contact_store.init()
    return contact_store


@pytest.fixture
def resolver(store):
    return IdentityResolver(store, locks=IdentityLocks(timeout=1.0), max_retries=2)


@pytest.fixture
def seed(store):
    """Insert a contact with a controlled createdAt (minutes after BASE_TIME)."""

    def _seed(email=None, phone=None, linked_id=None, minutes=0):
        precedence = LinkPrecedence.SECONDARY if linked_id else LinkPrecedence.PRIMARY
        return store.insert(
            ContactDraft(email=email, phoneNumber=phone, linkedId=linked_id, linkPrecedence=precedence),
            created_at=BASE_TIME + timedelta(minutes=minutes),
        )

    return _seed
