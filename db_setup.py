import logging
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime
from typing import Iterable, List, Optional

from db_models import Contact, ContactDraft, LinkPrecedence
from errors import TransientStoreFailure

logger = logging.getLogger(__name__)

DB_NAME = "contacts.db"

CONTACT_COLUMNS = "id, phoneNumber, email, linkedId, linkPrecedence, createdAt, updatedAt, deletedAt"
UPDATABLE_FIELDS = {"linkPrecedence", "linkedId"}


def init_db(db_path: str = DB_NAME):
    conn = sqlite3.connect(db_path)
    cursor = conn.cursor()

    cursor.execute('''
        CREATE TABLE IF NOT EXISTS Contact (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            phoneNumber TEXT,
            email TEXT,
            linkedId INTEGER,
            linkPrecedence TEXT CHECK(linkPrecedence IN ('secondary', 'primary')),
            createdAt DATETIME DEFAULT CURRENT_TIMESTAMP,
            updatedAt DATETIME DEFAULT CURRENT_TIMESTAMP,
            deletedAt DATETIME,
            CHECK (email IS NOT NULL OR phoneNumber IS NOT NULL),
            FOREIGN KEY (linkedId) REFERENCES Contact (id)
        )
    ''')
    cursor.execute("CREATE INDEX IF NOT EXISTS ix_contact_email ON Contact (email)")
    cursor.execute("CREATE INDEX IF NOT EXISTS ix_contact_phone ON Contact (phoneNumber)")
    cursor.execute("CREATE INDEX IF NOT EXISTS ix_contact_linked ON Contact (linkedId)")
    conn.commit()

    conn.close()


def _is_transient(exc: sqlite3.OperationalError) -> bool:
    message = str(exc).lower()
    return "locked" in message or "busy" in message


def _now() -> str:
    return datetime.now().isoformat(timespec="microseconds")


class ContactStore:
    """SQLite-backed contact store.

    Each call opens its own connection unless the calling thread is inside
    ``transaction()``, in which case every call joins that transaction.
    """

    def __init__(self, db_path: str = DB_NAME, timeout: float = 5.0):
        self.db_path = db_path
        self.timeout = timeout
        self._local = threading.local()

    def init(self):
        init_db(self.db_path)

    def get_db_connection(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, timeout=self.timeout)
        conn.row_factory = sqlite3.Row
        return conn

    @property
    def in_transaction(self) -> bool:
        return getattr(self._local, "conn", None) is not None

    @contextmanager
    def transaction(self):
        if self.in_transaction:
            yield self
            return

        conn = self.get_db_connection()
        conn.isolation_level = None
        began = False
        try:
            try:
                conn.execute("BEGIN IMMEDIATE")
            except sqlite3.OperationalError as exc:
                if _is_transient(exc):
                    raise TransientStoreFailure(f"could not start transaction: {exc}") from exc
                raise
            began = True
            self._local.conn = conn
            yield self
            try:
                conn.execute("COMMIT")
            except sqlite3.OperationalError as exc:
                if _is_transient(exc):
                    raise TransientStoreFailure(f"could not commit transaction: {exc}") from exc
                raise
        except BaseException:
            if began and conn.in_transaction:
                conn.execute("ROLLBACK")
                logger.debug("Contact transaction rolled back")
            raise
        finally:
            self._local.conn = None
            conn.close()

    @contextmanager
    def _cursor(self):
        shared = getattr(self._local, "conn", None)
        conn = shared or self.get_db_connection()
        try:
            yield conn.cursor()
            if shared is None:
                conn.commit()
        except sqlite3.OperationalError as exc:
            if _is_transient(exc):
                raise TransientStoreFailure(f"contact store unavailable: {exc}") from exc
            raise
        finally:
            if shared is None:
                conn.close()

    def _select(self, where: str, params: Iterable = ()) -> List[Contact]:
        query = f"""
            SELECT {CONTACT_COLUMNS} FROM Contact
            WHERE deletedAt IS NULL AND ({where})
            ORDER BY createdAt ASC, id ASC
        """
        with self._cursor() as cursor:
            cursor.execute(query, tuple(params))
            rows = cursor.fetchall()
        return [Contact(**dict(row)) for row in rows]

    def find_by_email_or_phone(self, email: str = None, phone: str = None) -> List[Contact]:
        predicates = []
        params = []
        if email is not None:
            predicates.append("email = ?")
            params.append(email)
        if phone is not None:
            predicates.append("phoneNumber = ?")
            params.append(phone)
        if not predicates:
            return []
        return self._select(" OR ".join(predicates), params)

    def find_by_linked_id(self, primary_id: int) -> List[Contact]:
        return self._select("linkedId = ?", (primary_id,))

    def find_by_id(self, contact_id: int) -> Optional[Contact]:
        contacts = self._select("id = ?", (contact_id,))
        return contacts[0] if contacts else None

    def find_by_ids(self, ids: Iterable[int]) -> List[Contact]:
        ids = sorted(set(ids))
        if not ids:
            return []
        placeholders = ", ".join("?" for _ in ids)
        return self._select(f"id IN ({placeholders})", ids)

    def insert(self, draft: ContactDraft, created_at: datetime = None) -> Contact:
        now = _now()
        created = created_at.isoformat(timespec="microseconds") if created_at else now

        with self._cursor() as cursor:
            cursor.execute("""
                INSERT INTO Contact (phoneNumber, email, linkedId, linkPrecedence, createdAt, updatedAt)
                VALUES (?, ?, ?, ?, ?, ?)
            """, (draft.phoneNumber, draft.email, draft.linkedId, draft.linkPrecedence.value, created, now))
            contact_id = cursor.lastrowid
            cursor.execute(f"SELECT {CONTACT_COLUMNS} FROM Contact WHERE id = ?", (contact_id,))
            row = cursor.fetchone()

        return Contact(**dict(row))

    def update(self, contact_id: int, fields: dict):
        unknown = set(fields) - UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"cannot update contact fields: {sorted(unknown)}")
        if not fields:
            return

        values = dict(fields)
        if isinstance(values.get("linkPrecedence"), LinkPrecedence):
            values["linkPrecedence"] = values["linkPrecedence"].value

        assignments = ", ".join(f"{name} = ?" for name in values)
        with self._cursor() as cursor:
            cursor.execute(
                f"UPDATE Contact SET {assignments}, updatedAt = ? WHERE id = ?",
                (*values.values(), _now(), contact_id),
            )

    def update_many_by_linked_id(self, old_linked_id: int, new_linked_id: int) -> int:
        with self._cursor() as cursor:
            cursor.execute("""
                UPDATE Contact
                SET linkedId = ?, updatedAt = ?
                WHERE linkedId = ?
            """, (new_linked_id, _now(), old_linked_id))
            return cursor.rowcount
