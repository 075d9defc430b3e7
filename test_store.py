import sqlite3
from pathlib import Path

import pytest

from passtree.config import CHALLENGE, ROOT_GROUP_ID, ROOT_GROUP_NAME
from passtree.crypto import Cipher, open_blob
from passtree.errors import (
    AlreadyExists, AuthenticationFailure, CorruptRecord, CorruptStore,
    EntryNotFound, GroupNotFound, InvalidSchema, MalformedBlob, NotFound,
    StoreClosed, WrongCredentials,
)
from passtree.model import Credentials, EntryData, EntryGroupData
from passtree.store import SCHEMA, Store


def make_cipher(user='alice', password='pw1') -> Cipher:
    return Cipher.from_credentials(Credentials(user, password))


@pytest.fixture
def db_path(tmp_path: Path) -> Path:
    return tmp_path / 'alice.db'


@pytest.fixture
def store(db_path: Path):
    s = Store.create(db_path, make_cipher())
    yield s
    s.close()


def count_rows(path: Path, table: str) -> int:
    conn = sqlite3.connect(path)
    try:
        return conn.execute(f'SELECT COUNT(*) FROM {table}').fetchone()[0]
    finally:
        conn.close()


# -- create / open ------------------------------------------------------------

def test_create_and_open(db_path: Path):
    Store.create(db_path, make_cipher()).close()
    assert db_path.exists()
    with Store.open(db_path, make_cipher()) as s:
        assert s.root_group_id() == ROOT_GROUP_ID
        assert [g.data.group_name for g in s.groups()] == [ROOT_GROUP_NAME]


def test_create_twice(db_path: Path):
    Store.create(db_path, make_cipher()).close()
    with pytest.raises(AlreadyExists):
        Store.create(db_path, make_cipher())


def test_create_over_foreign_file(tmp_path: Path):
    path = tmp_path / 'notes.txt'
    path.write_text('keep me')
    with pytest.raises(AlreadyExists):
        Store.create(path, make_cipher())
    assert path.read_text() == 'keep me'


def test_open_missing(db_path: Path):
    with pytest.raises(NotFound):
        Store.open(db_path, make_cipher())
    assert not db_path.exists(), 'open must never create a file'


def test_challenge_gate(db_path: Path):
    Store.create(db_path, make_cipher('alice', 'pw1')).close()
    with pytest.raises(WrongCredentials):
        Store.open(db_path, make_cipher('alice', 'wrong'))
    with pytest.raises(WrongCredentials):
        Store.open(db_path, make_cipher('bob', 'pw1'))
    Store.open(db_path, make_cipher('alice', 'pw1')).close()


def test_challenge_row_is_sealed_constant(db_path: Path):
    Store.create(db_path, make_cipher()).close()
    conn = sqlite3.connect(db_path)
    rows = conn.execute('SELECT challenge FROM Metadata').fetchall()
    conn.close()
    assert len(rows) == 1
    blob = rows[0][0]
    assert CHALLENGE not in blob
    assert open_blob(make_cipher(), blob) == CHALLENGE


def test_open_tampered_challenge(db_path: Path):
    Store.create(db_path, make_cipher()).close()
    conn = sqlite3.connect(db_path)
    conn.execute("UPDATE Metadata SET challenge = X'0001'")
    conn.commit()
    conn.close()
    with pytest.raises(WrongCredentials):
        Store.open(db_path, make_cipher())


def test_open_not_a_store(tmp_path: Path):
    junk = tmp_path / 'junk.db'
    junk.write_bytes(b'this is not a sqlite database at all' * 10)
    with pytest.raises(CorruptStore):
        Store.open(junk, make_cipher())

    empty_db = tmp_path / 'empty.db'
    conn = sqlite3.connect(empty_db)
    conn.execute('CREATE TABLE t (x)')
    conn.commit()
    conn.close()
    with pytest.raises(CorruptStore):
        Store.open(empty_db, make_cipher())

    no_column = tmp_path / 'no_column.db'
    conn = sqlite3.connect(no_column)
    conn.execute('CREATE TABLE Metadata (id INTEGER PRIMARY KEY, secret BLOB)')
    conn.commit()
    conn.close()
    with pytest.raises(CorruptStore):
        Store.open(no_column, make_cipher())


def test_failed_create_leaves_no_file(db_path: Path):
    # Root group insert succeeds, challenge insert fails: nothing may remain
    schema = 'CREATE TABLE EntryGroup (id INTEGER PRIMARY KEY, data BLOB NOT NULL);'
    with pytest.raises(sqlite3.OperationalError):
        Store.create(db_path, make_cipher(), schema=schema)
    assert not db_path.exists()
    assert not Path(str(db_path) + '-wal').exists()

    # The path is free again
    Store.create(db_path, make_cipher()).close()


def test_create_with_external_schema(db_path: Path):
    with Store.create(db_path, make_cipher(), schema=SCHEMA) as s:
        gid = s.insert_entry_group(s.root_group_id(), EntryGroupData('g'))
        assert gid != ROOT_GROUP_ID


def test_create_with_dumped_schema(db_path: Path):
    # Shape of `sqlite3 .dump` output: an outer transaction around the DDL
    dumped = 'PRAGMA foreign_keys=OFF;\nBEGIN TRANSACTION;\n' + SCHEMA + '\nCOMMIT;\n'
    with Store.create(db_path, make_cipher(), schema=dumped) as s:
        gid = s.insert_entry_group(s.root_group_id(), EntryGroupData('g'))
        assert s.parent_group_id(gid) == ROOT_GROUP_ID
    with Store.open(db_path, make_cipher()) as s:
        assert [g.id for g in s.groups()] == [ROOT_GROUP_ID, gid]


@pytest.mark.parametrize('schema', [
    SCHEMA + '\nCOMMIT;\n',
    'BEGIN;\n' + SCHEMA,
    SCHEMA.replace('-- Entries.', 'COMMIT;\nBEGIN;\n-- Entries.'),
    'BEGIN;\n' + SCHEMA + '\nROLLBACK;\n',
    'SAVEPOINT s;\n' + SCHEMA + '\nRELEASE s;\n',
])
def test_create_rejects_transaction_control(db_path: Path, schema: str):
    with pytest.raises(InvalidSchema):
        Store.create(db_path, make_cipher(), schema=schema)
    assert not db_path.exists()


def test_schema_with_trigger_is_not_transaction_control(db_path: Path):
    trigger = (
        '\nCREATE TRIGGER keep_root BEFORE DELETE ON EntryGroup\n'
        'WHEN old.id = 1\n'
        "BEGIN SELECT RAISE(ABORT, 'root; is permanent'); END;\n"
    )
    with Store.create(db_path, make_cipher(), schema=SCHEMA + trigger) as s:
        with pytest.raises(sqlite3.IntegrityError):
            s.conn.execute('DELETE FROM EntryGroup WHERE id = 1')


def test_closed_store(store: Store):
    store.close()
    assert store.closed
    with pytest.raises(StoreClosed):
        store.entries()


# -- groups -------------------------------------------------------------------

def test_tree_invariant(store: Store, db_path: Path):
    root = store.root_group_id()
    assert root == ROOT_GROUP_ID
    assert store.parent_group_id(root) is None

    gid = store.insert_entry_group(root, EntryGroupData('work'))
    assert gid != root
    assert [g.id for g in store.groups(root)] == [gid]
    assert store.groups(root)[0].data == EntryGroupData('work')
    assert store.parent_group_id(gid) == root
    assert count_rows(db_path, 'EntryGroupParent') == 1

    sub = store.insert_entry_group(gid, EntryGroupData('servers'))
    assert [g.id for g in store.groups(gid)] == [sub]
    assert [g.id for g in store.groups(root)] == [gid]
    assert [g.id for g in store.groups()] == [root, gid, sub]
    assert store.group(sub).data.group_name == 'servers'


def test_insert_group_unknown_parent(store: Store, db_path: Path):
    with pytest.raises(GroupNotFound):
        store.insert_entry_group(999, EntryGroupData('ghost'))
    assert count_rows(db_path, 'EntryGroup') == 1
    assert count_rows(db_path, 'EntryGroupParent') == 0


def test_insert_group_atomic_on_edge_failure(store: Store, db_path: Path):
    # Force the second statement (parent edge insert) to fail
    store.conn.execute(
        """CREATE TRIGGER fail_edge BEFORE INSERT ON EntryGroupParent
           BEGIN SELECT RAISE(ABORT, 'edge insert refused'); END"""
    )
    with pytest.raises(sqlite3.IntegrityError):
        store.insert_entry_group(store.root_group_id(), EntryGroupData('orphan'))

    assert [g.id for g in store.groups()] == [ROOT_GROUP_ID]
    assert count_rows(db_path, 'EntryGroup') == 1

    # Store is still usable afterwards
    store.conn.execute('DROP TRIGGER fail_edge')
    gid = store.insert_entry_group(store.root_group_id(), EntryGroupData('ok'))
    assert store.parent_group_id(gid) == ROOT_GROUP_ID


def test_insert_group_after_sqlite_rollback(store: Store, db_path: Path):
    # RAISE(ROLLBACK) ends the transaction inside SQLite before we see the error
    store.conn.execute(
        """CREATE TRIGGER rollback_edge BEFORE INSERT ON EntryGroupParent
           BEGIN SELECT RAISE(ROLLBACK, 'edge insert rolled back'); END"""
    )
    with pytest.raises(sqlite3.IntegrityError, match='edge insert rolled back'):
        store.insert_entry_group(store.root_group_id(), EntryGroupData('orphan'))

    assert not store.conn.in_transaction
    assert count_rows(db_path, 'EntryGroup') == 1


def test_group_lookups_unknown(store: Store):
    with pytest.raises(GroupNotFound):
        store.group(42)
    with pytest.raises(GroupNotFound):
        store.parent_group_id(42)
    assert store.groups(42) == []


# -- entries ------------------------------------------------------------------

def test_scenario(db_path: Path):
    store = Store.create(db_path, make_cipher('alice', 'pw1'))
    data = EntryData('site1', 'alice@x', 'p@ss')
    eid = store.insert_entry(store.root_group_id(), data)

    entries = store.entries()
    assert len(entries) == 1
    assert entries[0].id == eid
    assert entries[0].data == data
    assert store.entry(eid).data == data
    store.close()

    with pytest.raises(WrongCredentials):
        Store.open(db_path, make_cipher('alice', 'wrong'))

    with Store.open(db_path, make_cipher('alice', 'pw1')) as s:
        assert s.entry(eid).data == data


def test_entries_are_encrypted_on_disk(store: Store, db_path: Path):
    store.insert_entry(store.root_group_id(), EntryData('bank', 'alice', 'hunter2'))
    raw = db_path.read_bytes()
    wal = Path(str(db_path) + '-wal')
    if wal.exists():
        raw += wal.read_bytes()
    assert b'hunter2' not in raw
    assert b'bank' not in raw


def test_insert_entry_unknown_group(store: Store, db_path: Path):
    with pytest.raises(GroupNotFound):
        store.insert_entry(999, EntryData('a', 'b', 'c'))
    assert count_rows(db_path, 'Entry') == 0


def test_entry_not_found(store: Store):
    with pytest.raises(EntryNotFound):
        store.entry(1)


def test_name_filter(store: Store):
    root = store.root_group_id()
    store.insert_entry(root, EntryData('abcdef', 'u1', 'p1'))
    protected = store.insert_entry(root, EntryData('protected', 'u2', 'p2'))
    store.insert_entry(root, EntryData('entry name', 'u3', 'p3'))

    assert [e.id for e in store.entries('ted')] == [protected]
    assert [e.data.entry_name for e in store.entries('e')] == ['abcdef', 'protected', 'entry name']
    assert store.entries('TED') == []  # case-sensitive
    assert len(store.entries('')) == 3
    assert len(store.entries()) == 3


def test_parent_group_filter(store: Store):
    root = store.root_group_id()
    work = store.insert_entry_group(root, EntryGroupData('work'))
    a = store.insert_entry(root, EntryData('mail', 'u', 'p'))
    b = store.insert_entry(work, EntryData('vpn', 'u', 'p'))
    c = store.insert_entry(work, EntryData('mail-work', 'u', 'p'))

    assert [e.id for e in store.entries()] == [a, b, c]
    assert [e.id for e in store.entries(parent_group_id=root)] == [a]
    assert [e.id for e in store.entries(parent_group_id=work)] == [b, c]
    assert [e.id for e in store.entries('mail', work)] == [c]
    assert store.entries(parent_group_id=999) == []


def test_tampered_entry(store: Store):
    eid = store.insert_entry(store.root_group_id(), EntryData('a', 'b', 'c'))
    blob = bytearray(store.conn.execute('SELECT data FROM Entry WHERE id = ?', (eid,)).fetchone()[0])
    blob[-1] ^= 1
    store.conn.execute('UPDATE Entry SET data = ? WHERE id = ?', (bytes(blob), eid))
    with pytest.raises(AuthenticationFailure):
        store.entry(eid)
    with pytest.raises(AuthenticationFailure):
        store.entries()


def test_truncated_entry(store: Store):
    eid = store.insert_entry(store.root_group_id(), EntryData('a', 'b', 'c'))
    store.conn.execute("UPDATE Entry SET data = X'00010203' WHERE id = ?", (eid,))
    with pytest.raises(MalformedBlob):
        store.entry(eid)


def test_corrupt_entry_record(store: Store):
    # Validly sealed, but a group record where an entry is expected
    from passtree.crypto import seal_blob
    eid = store.insert_entry(store.root_group_id(), EntryData('a', 'b', 'c'))
    blob = seal_blob(store.cipher, EntryGroupData('not an entry').to_bytes())
    store.conn.execute('UPDATE Entry SET data = ? WHERE id = ?', (blob, eid))
    with pytest.raises(CorruptRecord):
        store.entry(eid)
