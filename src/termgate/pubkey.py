"""OpenSSH public key decoding.

Keys are compared by their decoded key material so that two renderings of
the same key (different comments, extra whitespace) are equal.
"""

import base64
import binascii
import logging
from dataclasses import dataclass
from pathlib import Path

import asyncssh

from termgate.errors import KeyDecodeError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PublicKey:
    """Decoded public key.

    Attributes:
        algorithm: Key type, e.g. "ssh-ed25519".
        data: Key blob in SSH wire format.
    """

    algorithm: str
    data: bytes

    def to_openssh(self) -> str:
        """Render as a single authorized_keys style line, without comment."""
        return f"{self.algorithm} {base64.b64encode(self.data).decode()}"

    @property
    def fingerprint(self) -> str:
        """SHA256 fingerprint as printed by ssh-keygen -l."""
        return asyncssh.import_public_key(self.to_openssh()).get_fingerprint()


def _entries(raw: str) -> list[str]:
    """Non-blank, non-comment lines of raw."""
    return [
        line.strip()
        for line in raw.splitlines()
        if line.strip() and not line.strip().startswith("#")
    ]


def _decode_entry(entry: str) -> PublicKey:
    """Decode one "type base64 [comment]" line."""
    fields = entry.split(None, 2)
    if len(fields) < 2:
        raise KeyDecodeError("Expected '<type> <base64> [comment]'")

    algorithm, blob_text = fields[0], fields[1]

    try:
        blob = base64.b64decode(blob_text, validate=True)
    except (binascii.Error, ValueError) as e:
        raise KeyDecodeError(f"Invalid base64 key data: {e}") from e

    try:
        key = asyncssh.import_public_key(f"{algorithm} {blob_text}")
    except (asyncssh.KeyImportError, ValueError) as e:
        raise KeyDecodeError(f"Invalid {algorithm} key: {e}") from e

    # The blob names its own algorithm; it must agree with the type field
    if key.get_algorithm() != algorithm:
        raise KeyDecodeError(
            f"Key type {algorithm} does not match key data ({key.get_algorithm()})"
        )

    return PublicKey(algorithm=algorithm, data=blob)


def decode_public_key(raw: str) -> PublicKey:
    """Decode exactly one OpenSSH public key entry.

    Args:
        raw: Text such as "ssh-ed25519 AAAA... user@host".

    Returns:
        The decoded key. Any comment is discarded.

    Raises:
        KeyDecodeError: If raw holds zero entries, more than one entry,
            or an entry that does not parse.
    """
    entries = _entries(raw)
    if len(entries) != 1:
        raise KeyDecodeError(f"Expected exactly one public key, found {len(entries)}")
    return _decode_entry(entries[0])


def from_ssh_key(key: asyncssh.SSHKey) -> PublicKey:
    """Convert a key offered by a peer during authentication."""
    return decode_public_key(key.export_public_key("openssh").decode())


def load_authorized_keys(path: Path | str) -> list[PublicKey]:
    """Load every key from an authorized_keys style file.

    Args:
        path: File with one key per line. Blank and # lines are skipped.

    Returns:
        Decoded keys, in file order.

    Raises:
        KeyDecodeError: If any line is malformed (message names the line).
        OSError: If the file cannot be read.
    """
    keys = []
    content = Path(path).expanduser().read_text()
    for lineno, line in enumerate(content.splitlines(), start=1):
        if not line.strip() or line.strip().startswith("#"):
            continue
        try:
            keys.append(_decode_entry(line.strip()))
        except KeyDecodeError as e:
            raise KeyDecodeError(f"{path}:{lineno}: {e}") from e

    logger.debug(f"Loaded {len(keys)} authorized keys from {path}")
    return keys
