"""
passtree - Store Module

This file handles:
- SQLite database (stores encrypted blobs only)
- Store creation and opening (challenge check)
- Inserting/retrieving entries and groups
- The group tree (parent/child edges)

Database structure:
- EntryGroup: encrypted group records; id 1 is the root group
- EntryGroupParent: parent/child edges of the group tree
- Entry: encrypted entry records, each in exactly one group
- Metadata: the encrypted challenge, one row

Every data/challenge column holds a blob: nonce(12) || ciphertext.
"""

import logging
import os
import re
import sqlite3
from contextlib import contextmanager, suppress
from pathlib import Path
from typing import Iterator, List, Optional, Type

from .config import CHALLENGE, ROOT_GROUP_ID, ROOT_GROUP_NAME
from .crypto import Cipher, constant_compare, open_blob, seal_blob
from .errors import (
    AlreadyExists,
    AuthenticationFailure,
    CorruptStore,
    EntryNotFound,
    GroupNotFound,
    InvalidSchema,
    MalformedBlob,
    NotFound,
    StoreClosed,
    WrongCredentials,
)
from .model import Entry, EntryData, EntryGroup, EntryGroupData, decode_record

log = logging.getLogger(__name__)


# =============================================================================
# DATABASE SCHEMA
# =============================================================================

SCHEMA = """
-- Groups. AUTOINCREMENT keeps auto-assigned ids clear of the reserved root id.
CREATE TABLE IF NOT EXISTS EntryGroup (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    data BLOB NOT NULL               -- nonce || AES-GCM(EntryGroupData)
);

-- Group tree edges. A group has at most one parent; the root has none.
CREATE TABLE IF NOT EXISTS EntryGroupParent (
    parent_id INTEGER NOT NULL REFERENCES EntryGroup(id),
    child_id INTEGER NOT NULL UNIQUE REFERENCES EntryGroup(id),
    PRIMARY KEY (parent_id, child_id),
    CHECK (child_id <> parent_id)
);

-- Entries. Each belongs to exactly one group.
CREATE TABLE IF NOT EXISTS Entry (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    group_id INTEGER NOT NULL REFERENCES EntryGroup(id),
    data BLOB NOT NULL               -- nonce || AES-GCM(EntryData)
);

CREATE INDEX IF NOT EXISTS idx_entry_group_id ON Entry(group_id);

-- Challenge, written once at creation
CREATE TABLE IF NOT EXISTS Metadata (
    id INTEGER PRIMARY KEY CHECK (id = 1),
    challenge BLOB NOT NULL          -- nonce || AES-GCM(CHALLENGE)
);
"""

# SQLite PRAGMAs for crash safety and integrity
PRAGMAS = """
PRAGMA journal_mode=WAL;
PRAGMA synchronous=FULL;
PRAGMA foreign_keys=ON;
PRAGMA secure_delete=ON;
"""

_WRONG_CREDENTIALS = "Wrong username or password"


def _connect(path: str, create: bool) -> sqlite3.Connection:
    """
    Open a connection with explicit transaction control.

    With create=False the file is opened read-write but never created.
    """
    if create:
        conn = sqlite3.connect(path, isolation_level=None)
    else:
        uri = Path(path).resolve().as_uri() + "?mode=rw"
        conn = sqlite3.connect(uri, uri=True, isolation_level=None)
    conn.row_factory = sqlite3.Row
    return conn


def _remove_store_files(path: str) -> None:
    for suffix in ("", "-wal", "-shm", "-journal"):
        with suppress(FileNotFoundError):
            os.unlink(path + suffix)


_TRANSACTION_KEYWORDS = {"BEGIN", "COMMIT", "END", "ROLLBACK", "SAVEPOINT", "RELEASE"}
_LEADING_NOISE = re.compile(r"(?:\s+|--[^\n]*|/\*.*?\*/)*", re.S)


def _split_statements(script: str) -> List[str]:
    """Split a script into statements; trigger bodies and literals stay whole."""
    statements, pending = [], ""
    for chunk in script.split(";"):
        pending += chunk + ";"
        if sqlite3.complete_statement(pending):
            statements.append(pending)
            pending = ""
    if pending:
        statements.append(pending)
    return statements


def _keyword(statement: str) -> str:
    body = statement[_LEADING_NOISE.match(statement).end():]
    match = re.match(r"[A-Za-z]+", body)
    return match.group(0).upper() if match else ""


def _unwrap_transaction(script: str) -> str:
    """
    Strip an outer BEGIN ... COMMIT pair (as written by `sqlite3 .dump`).

    The schema runs inside the creation transaction, so any other
    transaction control in the script raises InvalidSchema.
    """
    statements = _split_statements(script)
    keywords = [_keyword(s) for s in statements]
    control = [i for i, kw in enumerate(keywords) if kw in _TRANSACTION_KEYWORDS]
    if not control:
        return script

    last = max(i for i, kw in enumerate(keywords) if kw)
    if (len(control) == 2
            and keywords[control[0]] == "BEGIN"
            and control[1] == last
            and keywords[last] in ("COMMIT", "END")):
        return "".join(s for i, s in enumerate(statements) if i not in control)
    raise InvalidSchema("Creation script must not control transactions")


# =============================================================================
# STORE CLASS
# =============================================================================

class Store:
    """
    Encrypted credential store - one SQLite file per user.

    Usage:
        cipher = Cipher.from_credentials(Credentials("alice", "pw1"))

        # Create new store
        store = Store.create("alice.db", cipher)

        # Later: open it again (wrong credentials raise WrongCredentials)
        store = Store.open("alice.db", cipher)

        # Add a group and an entry
        work = store.insert_entry_group(store.root_group_id(), EntryGroupData("work"))
        entry_id = store.insert_entry(work, EntryData("site1", "alice@x", "p@ss"))

        # Query
        store.entries(name_filter="site")
        store.groups(parent_group_id=work)

        store.close()

    The store borrows its Cipher; it never derives or stores key material.
    """

    def __init__(self, conn: sqlite3.Connection, cipher: Cipher, path: str):
        # Use Store.create() / Store.open() instead of calling this directly
        self.conn: Optional[sqlite3.Connection] = conn
        self.cipher = cipher
        self.path = path

    @classmethod
    def create(cls, path, cipher: Cipher, schema: str = SCHEMA) -> "Store":
        """
        Create a new store file at path.

        This runs in one transaction:
        1. Provisions the schema
        2. Inserts the root group with its reserved id
        3. Seals the challenge constant as the single Metadata row

        If anything fails, the transaction is rolled back and the file is
        removed again.

        Args:
            path: Where to create the SQLite file
            cipher: Cipher derived from the user's credentials
            schema: Schema script (defaults to SCHEMA)

        Raises:
            AlreadyExists: a file is already present at path
            InvalidSchema: schema controls transactions beyond one outer
                BEGIN ... COMMIT pair
        """
        path = os.fspath(path)
        if os.path.exists(path):
            raise AlreadyExists(f"Store already exists at {path}")
        schema = _unwrap_transaction(schema)

        conn = _connect(path, create=True)
        try:
            # journal_mode cannot change inside a transaction
            conn.executescript(PRAGMAS)
            conn.executescript("BEGIN;\n" + schema)
            conn.execute(
                "INSERT INTO EntryGroup(id, data) VALUES (?, ?)",
                (ROOT_GROUP_ID, seal_blob(cipher, EntryGroupData(ROOT_GROUP_NAME).to_bytes()))
            )
            conn.execute(
                "INSERT INTO Metadata(challenge) VALUES (?)",
                (seal_blob(cipher, CHALLENGE),)
            )
            conn.execute("COMMIT")
        except BaseException:
            log.warning("store creation failed, removing %s", path)
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            conn.close()
            _remove_store_files(path)
            raise

        log.info("created store %s", path)
        return cls(conn, cipher, path)

    @classmethod
    def open(cls, path, cipher: Cipher) -> "Store":
        """
        Open an existing store and verify the cipher against its challenge.

        Raises:
            NotFound: no file at path
            CorruptStore: the file has no Metadata table or challenge row,
                or is not a SQLite database
            WrongCredentials: the challenge does not decrypt to CHALLENGE
        """
        path = os.fspath(path)
        if not os.path.exists(path):
            raise NotFound(f"No store at {path}")

        conn = _connect(path, create=False)
        try:
            blob = cls._read_challenge(conn, path)
            try:
                challenge = open_blob(cipher, blob)
            except (AuthenticationFailure, MalformedBlob):
                raise WrongCredentials(_WRONG_CREDENTIALS) from None
            if not constant_compare(challenge, CHALLENGE):
                raise WrongCredentials(_WRONG_CREDENTIALS)
            conn.executescript(PRAGMAS)
        except BaseException:
            conn.close()
            raise

        log.info("opened store %s", path)
        return cls(conn, cipher, path)

    @staticmethod
    def _read_challenge(conn: sqlite3.Connection, path: str) -> bytes:
        try:
            has_metadata = conn.execute(
                "SELECT 1 FROM sqlite_master WHERE type = 'table' AND name = 'Metadata'"
            ).fetchone()
        except sqlite3.OperationalError:
            # busy/locked/I/O: not a statement about the file's contents
            raise
        except sqlite3.DatabaseError as exc:
            raise CorruptStore(f"{path} is not a passtree store") from exc
        if not has_metadata:
            raise CorruptStore(f"{path} has no Metadata table")
        columns = {row["name"] for row in conn.execute("PRAGMA table_info(Metadata)")}
        if "challenge" not in columns:
            raise CorruptStore(f"{path} Metadata table has no challenge column")

        rows = conn.execute("SELECT challenge FROM Metadata").fetchall()
        if len(rows) != 1:
            raise CorruptStore(f"{path} has {len(rows)} challenge rows, expected 1")
        blob = rows[0]["challenge"]
        if not isinstance(blob, bytes):
            raise CorruptStore(f"{path} challenge is not a blob")
        return blob

    def close(self) -> None:
        """Close the database connection. The cipher is left to the caller."""
        if self.conn:
            self.conn.close()
            self.conn = None
            log.debug("closed store %s", self.path)

    @property
    def closed(self) -> bool:
        return self.conn is None

    def __enter__(self) -> "Store":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    # =========================================================================
    # GROUPS
    # =========================================================================

    def root_group_id(self) -> int:
        """Reserved id of the root group (a constant, not looked up)."""
        return ROOT_GROUP_ID

    def insert_entry_group(self, parent_group_id: int, group: EntryGroupData) -> int:
        """
        Add a group under parent_group_id.

        The group row and its parent edge are inserted in one transaction;
        if either fails neither is kept, so there is never a group without
        a parent.

        Returns:
            New group id

        Raises:
            GroupNotFound: parent_group_id does not exist
        """
        self._require_open()
        blob = seal_blob(self.cipher, group.to_bytes())

        with self._transaction() as conn:
            self._require_group(parent_group_id)
            group_id = conn.execute(
                "INSERT INTO EntryGroup(data) VALUES (?)", (blob,)
            ).lastrowid
            conn.execute(
                "INSERT INTO EntryGroupParent(parent_id, child_id) VALUES (?, ?)",
                (parent_group_id, group_id)
            )

        log.debug("inserted group (id=%d, parent=%d)", group_id, parent_group_id)
        return group_id

    def group(self, group_id: int) -> EntryGroup:
        """Get one group. Raises GroupNotFound if absent."""
        self._require_open()
        row = self.conn.execute(
            "SELECT data FROM EntryGroup WHERE id = ?", (group_id,)
        ).fetchone()
        if not row:
            raise GroupNotFound(group_id)
        return EntryGroup(group_id, self._open_record(row["data"], EntryGroupData))

    def groups(self, parent_group_id: Optional[int] = None) -> List[EntryGroup]:
        """
        List groups, decrypted.

        Args:
            parent_group_id: If given, only direct children of this group

        Returns:
            Groups ordered by id
        """
        self._require_open()
        if parent_group_id is None:
            rows = self.conn.execute(
                "SELECT id, data FROM EntryGroup ORDER BY id"
            ).fetchall()
        else:
            rows = self.conn.execute(
                """SELECT g.id, g.data
                   FROM EntryGroup g
                   JOIN EntryGroupParent p ON p.child_id = g.id
                   WHERE p.parent_id = ?
                   ORDER BY g.id""",
                (parent_group_id,)
            ).fetchall()
        return [
            EntryGroup(row["id"], self._open_record(row["data"], EntryGroupData))
            for row in rows
        ]

    def parent_group_id(self, group_id: int) -> Optional[int]:
        """Parent of group_id, or None for the root."""
        self._require_open()
        self._require_group(group_id)
        row = self.conn.execute(
            "SELECT parent_id FROM EntryGroupParent WHERE child_id = ?", (group_id,)
        ).fetchone()
        return row["parent_id"] if row else None

    # =========================================================================
    # ENTRIES
    # =========================================================================

    def insert_entry(self, group_id: int, entry: EntryData) -> int:
        """
        Add an encrypted entry to group_id.

        Returns:
            New entry id

        Raises:
            GroupNotFound: group_id does not exist
        """
        self._require_open()
        blob = seal_blob(self.cipher, entry.to_bytes())

        with self._transaction() as conn:
            self._require_group(group_id)
            entry_id = conn.execute(
                "INSERT INTO Entry(group_id, data) VALUES (?, ?)", (group_id, blob)
            ).lastrowid

        log.debug("inserted entry (id=%d, group=%d)", entry_id, group_id)
        return entry_id

    def entry(self, entry_id: int) -> Entry:
        """
        Get one entry, decrypted.

        Raises:
            EntryNotFound: no such row
            AuthenticationFailure / MalformedBlob / CorruptRecord: the stored
                blob cannot be opened or decoded
        """
        self._require_open()
        row = self.conn.execute(
            "SELECT data FROM Entry WHERE id = ?", (entry_id,)
        ).fetchone()
        if not row:
            raise EntryNotFound(entry_id)
        return Entry(entry_id, self._open_record(row["data"], EntryData))

    def entries(
        self,
        name_filter: Optional[str] = None,
        parent_group_id: Optional[int] = None
    ) -> List[Entry]:
        """
        List entries, decrypted.

        Every candidate row is decrypted first; the name filter is a plain
        case-sensitive substring test on the decrypted entry name.

        Args:
            name_filter: Keep only entries whose name contains this
            parent_group_id: Keep only entries in this group

        Returns:
            Entries ordered by id (insertion order)
        """
        self._require_open()
        if parent_group_id is None:
            rows = self.conn.execute(
                "SELECT id, data FROM Entry ORDER BY id"
            ).fetchall()
        else:
            rows = self.conn.execute(
                "SELECT id, data FROM Entry WHERE group_id = ? ORDER BY id",
                (parent_group_id,)
            ).fetchall()

        matched = []
        for row in rows:
            data = self._open_record(row["data"], EntryData)
            if name_filter is not None and name_filter not in data.entry_name:
                continue
            matched.append(Entry(row["id"], data))
        return matched

    # =========================================================================
    # INTERNAL HELPERS
    # =========================================================================

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        """BEGIN ... COMMIT, with ROLLBACK on any exception."""
        self.conn.execute("BEGIN")
        try:
            yield self.conn
        except BaseException:
            if self.conn.in_transaction:
                self.conn.execute("ROLLBACK")
            log.debug("rolled back transaction on %s", self.path)
            raise
        self.conn.execute("COMMIT")

    def _open_record(self, blob: bytes, record_type: Type):
        return decode_record(open_blob(self.cipher, blob), record_type)

    def _require_group(self, group_id: int) -> None:
        row = self.conn.execute(
            "SELECT 1 FROM EntryGroup WHERE id = ?", (group_id,)
        ).fetchone()
        if not row:
            raise GroupNotFound(group_id)

    def _require_open(self) -> None:
        """Check that the store is open."""
        if self.conn is None:
            raise StoreClosed("Store is closed. Call Store.open() first.")
