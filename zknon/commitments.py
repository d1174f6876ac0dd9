"""
Note commitments.

A secret note is 32 random bytes rendered as hex. Only its SHA-256 digest is
stored; the public identifier is derived from the owner key and that digest,
so it names the balance without revealing the note.
"""

import hashlib
import hmac
import secrets

IDENTIFIER_PREFIX = "ZKP-"
NOTE_BYTES = 32


def generate_secret_note() -> str:
    return secrets.token_hex(NOTE_BYTES)


def hash_note(note: str) -> str:
    return hashlib.sha256(note.encode("utf-8")).hexdigest()


def derive_identifier(owner_key: str, note_hash: str) -> str:
    commitment = hashlib.sha256(f"{owner_key}:{note_hash}".encode("utf-8")).hexdigest()
    return IDENTIFIER_PREFIX + commitment[:16].upper()


def notes_match(note: str, note_hash: str) -> bool:
    return hmac.compare_digest(hash_note(note), note_hash)
