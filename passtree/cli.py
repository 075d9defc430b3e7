"""
passtree - Command-line interface

Usage:
    passtree create                          # Create the store for a user
    passtree get entries [-n NAME] [-a]      # List entries
    passtree get -s , groups -g 1            # List child groups of the root
    passtree add entry                       # Prompt for and add an entry
    passtree add group                       # Prompt for and add a group

Credentials come from a two-line file (-c) or from prompts. The store file
is <DB_DIR><username><DB_SUFFIX> (see config.py).
"""

import argparse
import getpass
import logging
import os
import sqlite3
import sys
from typing import Optional

from . import config
from .crypto import Cipher
from .errors import PasstreeError
from .logger import setup_logging
from .model import Credentials, EntryData, EntryGroupData
from .store import SCHEMA, Store

log = logging.getLogger(__name__)


# =============================================================================
# Prompts
# =============================================================================

def read_password(prompt: str, show_password: bool) -> str:
    if show_password:
        return input(prompt)
    return getpass.getpass(prompt)


def read_credentials_file(path: str) -> Credentials:
    with open(path, encoding="utf-8") as f:
        lines = f.read().splitlines()
    if len(lines) < 1:
        raise ValueError(f"{path}: missing username")
    if len(lines) < 2:
        raise ValueError(f"{path}: missing password")
    return Credentials(lines[0], lines[1])


def prompt_credentials(show_password: bool) -> Credentials:
    sys.stderr.write("Username: ")
    sys.stderr.flush()
    line = sys.stdin.readline()
    if not line:
        raise EOFError
    user = line.rstrip("\r\n")

    if show_password:
        sys.stderr.write("Password: ")
        sys.stderr.flush()
        line = sys.stdin.readline()
        if not line:
            raise EOFError
        return Credentials(user, line.rstrip("\r\n"))
    return Credentials(user, getpass.getpass("Password: "))


def is_valid_name(name: str) -> bool:
    """Printable ASCII (space included), not empty."""
    return bool(name) and all(ch.isascii() and ch.isprintable() for ch in name)


def prompt_group_id(store: Store) -> int:
    raw = input("- parent group id (leave empty for root): ").strip()
    if not raw:
        return store.root_group_id()
    return int(raw)


def ensure_store_dir(path: str) -> None:
    d = os.path.dirname(path)
    if d and not os.path.exists(d):
        os.makedirs(d, exist_ok=True)


# =============================================================================
# Commands
# =============================================================================

def cmd_create(args, path: str, cipher: Cipher, settings: config.Settings) -> int:
    ensure_store_dir(path)
    schema = settings.read_creation_script() or SCHEMA
    Store.create(path, cipher, schema).close()
    print(f"Store created at {path}", file=sys.stderr)
    return 0


def cmd_get_entries(args, path: str, cipher: Cipher, settings: config.Settings) -> int:
    sep = args.separator
    show_id = args.id or args.all
    show_username = args.username or args.all
    show_password = args.password or args.all

    with Store.open(path, cipher) as store:
        matched = store.entries(args.name, args.parent_group)

    for entry in matched:
        fields = []
        if show_id:
            fields.append(str(entry.id))
        fields.append(entry.data.entry_name)
        if show_username:
            fields.append(entry.data.username)
        if show_password:
            fields.append(entry.data.password)
        print(sep.join(fields))
    return 0


def cmd_get_groups(args, path: str, cipher: Cipher, settings: config.Settings) -> int:
    with Store.open(path, cipher) as store:
        matched = store.groups(args.parent_group)

    for group in matched:
        print(f"{group.id}{args.separator}{group.data.group_name}")
    return 0


def cmd_add_entry(args, path: str, cipher: Cipher, settings: config.Settings) -> int:
    with Store.open(path, cipher) as store:
        print("Adding entry")
        try:
            parent = prompt_group_id(store)
        except ValueError:
            print("ERROR: group id must be a number", file=sys.stderr)
            return 1

        name = input("- entry name: ").strip()
        if not is_valid_name(name):
            print(f"ERROR: invalid entry name {name!r}", file=sys.stderr)
            return 1
        username = input("- entry username: ").strip()
        password = read_password("- entry password: ", args.show_password).strip()

        entry_id = store.insert_entry(parent, EntryData(name, username, password))
    print(f"Added entry {entry_id}")
    return 0


def cmd_add_group(args, path: str, cipher: Cipher, settings: config.Settings) -> int:
    with Store.open(path, cipher) as store:
        print("Adding group")
        try:
            parent = prompt_group_id(store)
        except ValueError:
            print("ERROR: group id must be a number", file=sys.stderr)
            return 1

        name = input("- group name: ").strip()
        if not is_valid_name(name):
            print(f"ERROR: invalid group name {name!r}", file=sys.stderr)
            return 1

        group_id = store.insert_entry_group(parent, EntryGroupData(name))
    print(f"Added group {group_id}")
    return 0


# =============================================================================
# Parser
# =============================================================================

def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="passtree", description="Command-line password manager")
    p.add_argument("-c", "--credentials-file",
                   help="File containing the username and password, one per line")
    p.add_argument("--show-password", action="store_true",
                   help="Do not hide password inputs (not recommended on a terminal)")
    p.add_argument("-v", "--verbose", action="store_true", help="Debug logging on stderr")
    sub = p.add_subparsers(dest="cmd", required=True)

    p_create = sub.add_parser("create", aliases=["c"], help="Create a new encrypted store")
    p_create.set_defaults(func=cmd_create)

    p_get = sub.add_parser("get", aliases=["g"], help="Retrieve entry or group data")
    p_get.add_argument("-s", "--separator", default="\t")
    get_sub = p_get.add_subparsers(dest="get_cmd", required=True)

    p_entries = get_sub.add_parser("entries", aliases=["e"], help="List entries")
    p_entries.add_argument("-g", "--parent-group", type=int,
                           help="Only entries in this group")
    p_entries.add_argument("-n", "--name", help="Only entries whose name contains NAME")
    p_entries.add_argument("-u", "--username", action="store_true", help="Print usernames")
    p_entries.add_argument("-p", "--password", action="store_true", help="Print passwords")
    p_entries.add_argument("-i", "--id", action="store_true", help="Print entry ids")
    p_entries.add_argument("-a", "--all", action="store_true", help="Print every field")
    p_entries.set_defaults(func=cmd_get_entries)

    p_groups = get_sub.add_parser("groups", aliases=["g"], help="List groups")
    p_groups.add_argument("-g", "--parent-group", type=int,
                          help="Only direct children of this group")
    p_groups.set_defaults(func=cmd_get_groups)

    p_add = sub.add_parser("add", aliases=["a"], help="Add an entry or a group")
    add_sub = p_add.add_subparsers(dest="add_cmd", required=True)
    add_sub.add_parser("entry", aliases=["e"], help="Add an entry").set_defaults(func=cmd_add_entry)
    add_sub.add_parser("group", aliases=["g"], help="Add a group").set_defaults(func=cmd_add_group)

    return p


def main(argv: Optional[list] = None, settings: Optional[config.Settings] = None) -> int:
    args = build_parser().parse_args(argv)
    settings = settings or config.settings
    setup_logging("DEBUG" if args.verbose else settings.log_level)

    try:
        if args.credentials_file:
            credentials = read_credentials_file(args.credentials_file)
        else:
            credentials = prompt_credentials(args.show_password)
    except (OSError, ValueError) as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return 1
    except EOFError:
        return 1

    cipher = Cipher.from_credentials(credentials)
    path = settings.store_path(credentials.user)
    log.debug("using store %s", path)

    try:
        return args.func(args, path, cipher, settings)
    except PasstreeError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return 1
    except (OSError, UnicodeDecodeError, sqlite3.Error) as e:
        # unreadable creation script, bad schema, database I/O
        print(f"ERROR: {e}", file=sys.stderr)
        return 1
    except EOFError:
        return 1
    except KeyboardInterrupt:
        print("\nExiting...", file=sys.stderr)
        return 130


if __name__ == "__main__":
    sys.exit(main())
