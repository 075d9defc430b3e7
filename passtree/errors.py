"""
passtree - Exceptions

Every error the core raises derives from PasstreeError so the calling layer
can catch one type. The subclasses keep cryptographic failures (wrong key,
tampering) apart from structural ones (damaged or incompatible data).

    PasstreeError
    ├── StoreError           store file lifecycle
    │   ├── AlreadyExists
    │   ├── NotFound
    │   ├── WrongCredentials
    │   ├── CorruptStore
    │   ├── InvalidSchema
    │   └── StoreClosed
    ├── CryptoError          AEAD / blob layer
    │   ├── AuthenticationFailure
    │   └── MalformedBlob
    ├── CorruptRecord        record decoding
    └── LookupFailure        referential lookups
        ├── GroupNotFound
        └── EntryNotFound

SQLite and OS errors are not wrapped; they propagate as raised.
"""


class PasstreeError(Exception):
    """Base class for all passtree errors."""


# =============================================================================
# Store lifecycle
# =============================================================================

class StoreError(PasstreeError):
    pass


class AlreadyExists(StoreError):
    """A file is already present where a new store was to be created."""


class NotFound(StoreError):
    """No store file at the requested path."""


class WrongCredentials(StoreError):
    """The challenge row could not be opened with the supplied credentials."""


class CorruptStore(StoreError):
    """The file is not a usable store (missing tables or challenge row)."""


class InvalidSchema(StoreError):
    """A creation script that cannot run inside the creation transaction."""


class StoreClosed(StoreError):
    pass


# =============================================================================
# Cryptography
# =============================================================================

class CryptoError(PasstreeError):
    pass


class AuthenticationFailure(CryptoError):
    """AEAD tag verification failed: wrong key, tampered or truncated data."""


class MalformedBlob(CryptoError):
    """Stored blob is too short to hold a nonce."""


# =============================================================================
# Records and lookups
# =============================================================================

class CorruptRecord(PasstreeError):
    """Decrypted bytes do not parse as a record of the expected shape."""


class LookupFailure(PasstreeError):
    pass


class GroupNotFound(LookupFailure):
    def __init__(self, group_id: int):
        super().__init__(f"Group {group_id} not found")
        self.group_id = group_id


class EntryNotFound(LookupFailure):
    def __init__(self, entry_id: int):
        super().__init__(f"Entry {entry_id} not found")
        self.entry_id = entry_id
