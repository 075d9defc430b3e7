"""
passtree - Data Model

Plain records stored (encrypted) in the database, plus their byte encoding.

Record encoding is canonical CBOR:
    - one map per record, text keys in the fixed dataclass field order
    - every value is a text string
    - exactly one item per buffer; trailing bytes are rejected
    - anything that does not re-encode to the same bytes (duplicate keys,
      reordered keys, non-minimal lengths) is rejected

The encoded bytes are what gets sealed by crypto.seal_blob().
"""

from dataclasses import dataclass, asdict, field, fields
from typing import Type, TypeVar, Union

import cbor2

from .errors import CorruptRecord

R = TypeVar("R")


@dataclass
class Credentials:
    """Username/password pair. Never persisted; only used to derive a key."""
    user: str
    password: str = field(repr=False)


def _encode(record) -> bytes:
    return cbor2.dumps(asdict(record))


def _decode(cls, data: bytes):
    try:
        obj = cbor2.loads(data)
    except (cbor2.CBORDecodeError, UnicodeDecodeError) as exc:
        raise CorruptRecord(f"Cannot parse {cls.__name__}: {exc}") from exc

    if not isinstance(obj, dict):
        raise CorruptRecord(f"{cls.__name__} record is not a map")

    names = [f.name for f in fields(cls)]
    if set(obj) != set(names):
        raise CorruptRecord(
            f"{cls.__name__} fields {list(obj)!r} do not match {names}"
        )
    for name in names:
        if not isinstance(obj[name], str):
            raise CorruptRecord(f"{cls.__name__}.{name} is not a string")

    # trailing bytes, duplicate keys and reordered keys all fail here
    record = cls(**obj)
    if _encode(record) != data:
        raise CorruptRecord(f"{cls.__name__} record is not canonically encoded")
    return record


@dataclass
class EntryGroupData:
    group_name: str

    @property
    def name(self) -> str:
        return self.group_name

    def to_bytes(self) -> bytes:
        return _encode(self)

    @staticmethod
    def from_bytes(b: bytes) -> "EntryGroupData":
        return _decode(EntryGroupData, b)




@dataclass
class EntryGroup:
    id: int
    data: EntryGroupData


@dataclass
class EntryData:
    entry_name: str
    username: str
    password: str = field(repr=False)

    @property
    def name(self) -> str:
        return self.entry_name

    def to_bytes(self) -> bytes:
        return _encode(self)

    @staticmethod
    def from_bytes(b: bytes) -> "EntryData":
        return _decode(EntryData, b)


@dataclass
class Entry:
    id: int
    data: EntryData


def encode_record(record: Union[EntryData, EntryGroupData]) -> bytes:
    return record.to_bytes()


def decode_record(data: bytes, record_type: Type[R]) -> R:
    """Decode bytes into record_type, raising CorruptRecord on any mismatch."""
    return record_type.from_bytes(data)
