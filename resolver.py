"""Identity reconciliation: match, classify, mutate and consolidate contacts."""

import logging
import re
import threading
from contextlib import contextmanager
from datetime import datetime
from enum import Enum
from typing import Dict, Iterable, List, NamedTuple, Optional, Tuple

from db_models import Contact, ContactDraft, ContactResponse, LinkPrecedence
from db_setup import ContactStore
from errors import ConflictingMerge, InvalidInput, NotFound, TransientStoreFailure

logger = logging.getLogger(__name__)


class Cluster(NamedTuple):
    primary: Contact
    secondaries: List[Contact]

    @property
    def members(self) -> List[Contact]:
        return [self.primary] + self.secondaries

    @property
    def ids(self) -> set:
        return {contact.id for contact in self.members}


class Outcome(str, Enum):
    NO_MATCH = "no_match"
    EXACT_MATCH = "exact_match"
    PARTIAL_MATCH = "partial_match"
    MERGE = "merge"


class Classification(NamedTuple):
    outcome: Outcome
    primaries: List[Contact]


def seniority(contact: Contact) -> Tuple[datetime, int]:
    return contact.createdAt, contact.id


def cluster_of(contact: Contact, store: ContactStore) -> Optional[Cluster]:
    """Resolve the primary owning ``contact`` and collect its live secondaries.

    Follows ``linkedId`` until a primary is reached, so an unflattened chain
    still resolves. Returns None when the chain ends at a missing or deleted
    contact, or loops.
    """
    current = contact
    visited = set()
    while not current.is_primary:
        if current.linkedId is None or current.id in visited:
            return None
        visited.add(current.id)
        current = store.find_by_id(current.linkedId)
        if current is None:
            return None
    return Cluster(current, store.find_by_linked_id(current.id))


def find_matching_contacts(store: ContactStore, email: str = None, phone: str = None) -> List[Contact]:
    direct = store.find_by_email_or_phone(email, phone)

    ids = {contact.id for contact in direct}
    resolved_primaries = set()
    for contact in direct:
        owner = contact.id if contact.is_primary else contact.linkedId
        if owner in resolved_primaries:
            continue
        cluster = cluster_of(contact, store)
        if cluster is None:
            logger.warning("Contact %s has no live primary", contact.id)
            continue
        resolved_primaries.add(cluster.primary.id)
        ids |= cluster.ids

    related = store.find_by_ids(ids)
    return related or direct


def distinct_primaries(contacts: List[Contact], store: ContactStore) -> List[Contact]:
    by_id = {contact.id: contact for contact in contacts}
    primaries: Dict[int, Contact] = {c.id: c for c in contacts if c.is_primary}

    for contact in contacts:
        if contact.is_primary:
            continue
        target = by_id.get(contact.linkedId)
        if target is not None and target.is_primary:
            primaries[target.id] = target
            continue
        cluster = cluster_of(contact, store)
        if cluster is not None:
            primaries[cluster.primary.id] = cluster.primary

    return sorted(primaries.values(), key=seniority)


def classify(contacts: List[Contact], email: Optional[str], phone: Optional[str],
             store: ContactStore) -> Classification:
    if not contacts:
        return Classification(Outcome.NO_MATCH, [])

    primaries = distinct_primaries(contacts, store)
    if not primaries:
        logger.warning("Matched contacts %s resolve to no live primary", [c.id for c in contacts])
        return Classification(Outcome.NO_MATCH, [])
    if len(primaries) > 1:
        return Classification(Outcome.MERGE, primaries)
    members = cluster_of(primaries[0], store).members
    if any(contact.matches(email, phone) for contact in members):
        return Classification(Outcome.EXACT_MATCH, primaries)
    return Classification(Outcome.PARTIAL_MATCH, primaries)


def _unique(values: Iterable[Optional[str]]) -> List[str]:
    seen = []
    for value in values:
        if value and value not in seen:
            seen.append(value)
    return seen


def _normalize_phone(phone: str) -> str:
    return re.sub(r"\D", "", phone) or phone.strip()


class IdentityLocks:
    """Advisory locks keyed by normalized email and phone.

    Entries are reference counted so the table only holds keys that are
    currently in use.
    """

    def __init__(self, timeout: float = 10.0):
        self.timeout = timeout
        self._guard = threading.Lock()
        self._locks: Dict[str, threading.Lock] = {}
        self._users: Dict[str, int] = {}

    @staticmethod
    def keys_for(email: str = None, phone: str = None) -> List[str]:
        keys = set()
        if email:
            keys.add("email:" + email.strip().lower())
        if phone:
            keys.add("phone:" + _normalize_phone(phone))
        return sorted(keys)

    def _checkout(self, key: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.setdefault(key, threading.Lock())
            self._users[key] = self._users.get(key, 0) + 1
            return lock

    def _checkin(self, key: str):
        with self._guard:
            self._users[key] -= 1
            if not self._users[key]:
                del self._users[key]
                del self._locks[key]

    @contextmanager
    def hold(self, keys: Iterable[str]):
        held = []
        try:
            for key in sorted(set(keys)):
                lock = self._checkout(key)
                if not lock.acquire(timeout=self.timeout):
                    self._checkin(key)
                    raise TransientStoreFailure(f"timed out waiting for identity lock {key!r}")
                held.append((key, lock))
            yield
        finally:
            for key, lock in reversed(held):
                lock.release()
                self._checkin(key)


class IdentityResolver:
    def __init__(self, store: ContactStore, locks: IdentityLocks = None, max_retries: int = 2):
        self.store = store
        self.locks = locks or IdentityLocks()
        self.max_retries = max_retries

    def resolve(self, email: str = None, phone_number: str = None) -> ContactResponse:
        email = email or None
        phone = phone_number or None
        if email is None and phone is None:
            raise InvalidInput("Either email or phoneNumber must be provided")

        attempt = 0
        with self.locks.hold(self.locks.keys_for(email, phone)):
            while True:
                try:
                    with self.store.transaction():
                        return self._resolve_once(email, phone)
                except (TransientStoreFailure, ConflictingMerge) as exc:
                    if attempt >= self.max_retries:
                        raise
                    attempt += 1
                    logger.warning("Resolution attempt %d failed: %s; retrying", attempt, exc)

    def _resolve_once(self, email: Optional[str], phone: Optional[str]) -> ContactResponse:
        contacts = find_matching_contacts(self.store, email, phone)
        classification = classify(contacts, email, phone, self.store)
        outcome = classification.outcome

        if outcome == Outcome.NO_MATCH:
            primary_id = self.create_primary(email, phone).id
        elif outcome == Outcome.EXACT_MATCH:
            primary_id = classification.primaries[0].id
        elif outcome == Outcome.PARTIAL_MATCH:
            primary_id = classification.primaries[0].id
            self.create_secondary(primary_id, email, phone)
        else:
            primary_id = self.merge(classification.primaries, email, phone)

        logger.debug("Resolved email=%s phone=%s as %s of %s", email, phone, outcome.value, primary_id)
        return self.consolidate(primary_id)

    def create_primary(self, email: str = None, phone: str = None) -> Contact:
        contact = self.store.insert(ContactDraft(
            email=email,
            phoneNumber=phone,
            linkPrecedence=LinkPrecedence.PRIMARY,
        ))
        logger.info("Created primary contact %s", contact.id)
        return contact

    def create_secondary(self, primary_id: int, email: str = None, phone: str = None) -> Contact:
        contact = self.store.insert(ContactDraft(
            email=email,
            phoneNumber=phone,
            linkedId=primary_id,
            linkPrecedence=LinkPrecedence.SECONDARY,
        ))
        logger.info("Created secondary contact %s under primary %s", contact.id, primary_id)
        return contact

    def merge(self, primaries: List[Contact], email: str = None, phone: str = None) -> int:
        """Collapse the clusters of ``primaries`` into the oldest one.

        Newer primaries are demoted and their secondaries re-pointed at the
        survivor. The incoming observation is stored as a secondary unless a
        row of the merged cluster already carries it. Returns the survivor id.
        """
        ordered = sorted(primaries, key=seniority)
        survivor, losers = ordered[0], ordered[1:]

        current = self.store.find_by_id(survivor.id)
        if current is None or not current.is_primary:
            raise ConflictingMerge(f"contact {survivor.id} is no longer a primary")

        for loser in losers:
            current = self.store.find_by_id(loser.id)
            if current is None:
                raise ConflictingMerge(f"contact {loser.id} disappeared before merge")
            if current.is_primary:
                self.store.update(loser.id, {
                    "linkPrecedence": LinkPrecedence.SECONDARY,
                    "linkedId": survivor.id,
                })
            elif current.linkedId != survivor.id:
                raise ConflictingMerge(
                    f"contact {loser.id} is already linked to {current.linkedId}, not {survivor.id}"
                )
            moved = self.store.update_many_by_linked_id(loser.id, survivor.id)
            logger.info("Merged primary %s into %s (%d contacts re-pointed)", loser.id, survivor.id, moved)

        cluster = cluster_of(survivor, self.store)
        if cluster is None:
            raise ConflictingMerge(f"cluster of {survivor.id} vanished during merge")
        if not any(contact.matches(email, phone) for contact in cluster.members):
            self.create_secondary(survivor.id, email, phone)

        return survivor.id

    def consolidate(self, primary_id: int) -> ContactResponse:
        primary = self.store.find_by_id(primary_id)
        if primary is None or not primary.is_primary:
            raise NotFound(f"Primary contact {primary_id} not found")

        cluster = cluster_of(primary, self.store)
        return ContactResponse(
            primaryContactId=primary.id,
            emails=_unique(contact.email for contact in cluster.members),
            phoneNumbers=_unique(contact.phoneNumber for contact in cluster.members),
            secondaryContactIds=[contact.id for contact in cluster.secondaries],
        )
