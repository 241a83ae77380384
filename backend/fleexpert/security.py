"""Local data protection and bearer credential helpers.

Message history and pending proofs are learner data. The server database
and the client's offline store are created with owner-only permissions.
"""

import os
from pathlib import Path


def secure_directory(path: str | Path, mode: int = 0o700) -> Path:
    """Create ``path`` (and its parents) and restrict it to the owner."""
    directory = Path(path)
    directory.mkdir(parents=True, exist_ok=True)
    os.chmod(directory, mode)
    return directory


def secure_file(path: str | Path, mode: int = 0o600) -> Path:
    """Restrict an existing file to the owner. Missing files are left alone."""
    target = Path(path)
    if target.is_file():
        os.chmod(target, mode)
    return target


def parse_bearer(value: str | None) -> str | None:
    """Extract the token from an ``Authorization: Bearer <token>`` value.

    Returns None for a missing header, another scheme, or an empty token.
    """
    if not value:
        return None
    scheme, _, token = value.strip().partition(" ")
    if scheme.lower() != "bearer":
        return None
    token = token.strip()
    return token or None
