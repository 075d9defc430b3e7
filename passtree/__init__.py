"""
passtree - Encrypted Hierarchical Credential Store

A local password store: named entries (username/password pairs) organized
into a tree of groups, kept in one SQLite file per user.

Key Features:
- Encrypted at rest: every row payload is sealed with AES-256-GCM
- Key from credentials: SHA-256(username || password), never stored
- Wrong credentials detected on open through an encrypted challenge row
- Group tree kept consistent with transactional inserts

Components:
- crypto.py: Key derivation, AES-GCM and the blob format (one file!)
- model.py: Entry/group records and their byte encoding
- store.py: SQLite schema and store operations
- config.py: Fixed identifiers and environment settings
- cli.py: Command-line interface (uses built-in argparse)

Usage:
    python -m passtree.cli create                  # Create store
    python -m passtree.cli add entry               # Add an entry
    python -m passtree.cli get entries -a          # List entries
    python -m passtree.cli get groups              # List groups
"""

__version__ = "0.1.0"
