from __future__ import annotations

import base64
import hashlib
from pathlib import Path
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken

from .config import settings

# Plaintext bytes per Fernet token when encrypting files
FILE_CHUNK_SIZE = 1024 * 1024


def _derive_key(secret: str) -> bytes:
    digest = hashlib.sha256(secret.encode("utf-8")).digest()
    return base64.urlsafe_b64encode(digest)


def _fernet(secret: str | None = None) -> Fernet:
    return Fernet(_derive_key(secret or settings.secret_key))


def encrypt_text(plain: str, secret: str | None = None) -> str:
    f = _fernet(secret)
    token = f.encrypt(plain.encode("utf-8"))
    return token.decode("utf-8")


def decrypt_text(token: str, secret: str | None = None) -> Optional[str]:
    f = _fernet(secret)
    try:
        return f.decrypt(token.encode("utf-8")).decode("utf-8")
    except (InvalidToken, ValueError):
        return None


# --- Output artifact encryption ---
# Fernet is not a streaming cipher, so files are split into fixed-size chunks,
# one token per chunk, newline-delimited. Tokens are urlsafe base64 and never
# contain a newline.

def encrypt_file(src: Path, dest: Path, secret: str | None = None) -> int:
    """Encrypt ``src`` into ``dest``. Returns the number of bytes written."""
    f = _fernet(secret)
    written = 0
    with open(src, "rb") as fin, open(dest, "wb") as fout:
        while True:
            chunk = fin.read(FILE_CHUNK_SIZE)
            if not chunk:
                break
            token = f.encrypt(chunk)
            fout.write(token)
            fout.write(b"\n")
            written += len(token) + 1
    return written


def decrypt_file(src: Path, dest: Path, secret: str | None = None) -> int:
    """Reverse of encrypt_file. Raises InvalidToken when the key does not match."""
    f = _fernet(secret)
    written = 0
    with open(src, "rb") as fin, open(dest, "wb") as fout:
        for line in fin:
            line = line.strip()
            if not line:
                continue
            plain = f.decrypt(line)
            fout.write(plain)
            written += len(plain)
    return written
