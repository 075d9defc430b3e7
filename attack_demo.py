"""
passtree - Attack Demonstration

Run: python attack_demo.py

What it shows (and why attacks fail):
1) Wrong credentials cannot open the store (challenge row).
2) Ciphertext tampering is detected by AES-GCM.
3) A truncated blob is reported as malformed, not as a wrong key.
4) A group whose parent edge cannot be written is rolled back (no orphans).
"""

import os
import sqlite3
import tempfile

from passtree.crypto import Cipher
from passtree.errors import PasstreeError
from passtree.model import Credentials, EntryData, EntryGroupData
from passtree.store import Store


LINE = "=" * 70


def section(title: str):
    print(f"\n{LINE}\n{title}\n{LINE}")


def main():
    # Prepare a fresh store
    tmp_dir = tempfile.mkdtemp()
    db_path = os.path.join(tmp_dir, "alice.db")
    cipher = Cipher.from_credentials(Credentials("alice", "CorrectHorseBatteryStaple!"))

    store = Store.create(db_path, cipher)
    entry_id = store.insert_entry(
        store.root_group_id(),
        EntryData("example.com", "alice@example.com", "super_secret_password"),
    )

    # 1) Wrong credentials
    section("Attack 1: Wrong credentials")
    try:
        wrong = Cipher.from_credentials(Credentials("alice", "wrong_password"))
        Store.open(db_path, wrong)
        print("Unexpected: store opened with wrong credentials")
    except PasstreeError as e:
        print(f"Expected failure: {type(e).__name__} ({e})")

    # 2) Ciphertext tampering (AES-GCM)
    section("Attack 2: Ciphertext tampering (AES-GCM)")
    row = store.conn.execute("SELECT data FROM Entry WHERE id = ?", (entry_id,)).fetchone()
    original = row["data"]
    blob = bytearray(original)
    blob[20] ^= 1  # flip one bit past the nonce
    store.conn.execute("UPDATE Entry SET data = ? WHERE id = ?", (bytes(blob), entry_id))
    try:
        store.entry(entry_id)
        print("Unexpected: tampered ciphertext still decrypted")
    except PasstreeError as e:
        print(f"Expected failure: {type(e).__name__} ({e})")

    # 3) Truncated blob
    section("Attack 3: Truncated blob")
    store.conn.execute("UPDATE Entry SET data = ? WHERE id = ?", (original[:8], entry_id))
    try:
        store.entry(entry_id)
        print("Unexpected: truncated blob decrypted")
    except PasstreeError as e:
        print(f"Expected failure: {type(e).__name__} ({e})")
    store.conn.execute("UPDATE Entry SET data = ? WHERE id = ?", (original, entry_id))

    # 4) Orphan group
    section("Attack 4: Parent edge insert fails mid-transaction")
    store.conn.execute(
        """CREATE TRIGGER refuse_edge BEFORE INSERT ON EntryGroupParent
           BEGIN SELECT RAISE(ABORT, 'edge insert refused'); END"""
    )
    try:
        store.insert_entry_group(store.root_group_id(), EntryGroupData("orphan"))
        print("Unexpected: group inserted without parent edge")
    except sqlite3.IntegrityError as e:
        names = [g.data.group_name for g in store.groups()]
        print(f"Expected failure: {e}; groups still {names}")
    store.conn.execute("DROP TRIGGER refuse_edge")

    # Cleanup
    store.close()
    for suffix in ("", "-wal", "-shm"):
        if os.path.exists(db_path + suffix):
            os.unlink(db_path + suffix)
    os.rmdir(tmp_dir)
    print("\nDemo complete. All showcased attacks failed as expected.")


if __name__ == "__main__":
    main()
