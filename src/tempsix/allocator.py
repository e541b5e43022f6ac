"""Identity allocation for tempsix.

Identities are 6-digit codes drawn uniformly from 100000-999999. The space is
small enough that collisions are routine under load, so allocation retries a
bounded number of times instead of keeping a shared counter. The primary key on
``identities.code`` has the final say: a code that passes the existence check
but loses the insert to a concurrent allocator is a collision, never a crash.
"""

from __future__ import annotations

import logging
import re
import secrets
import sqlite3
from datetime import datetime

from . import db
from .errors import AllocationExhausted, AlreadyTaken, InvalidFormat
from .metrics import metrics

logger = logging.getLogger(__name__)

# \d would also accept non-ASCII digits
CODE_PATTERN = re.compile(r"[0-9]{6}")
CODE_MIN = 100000
CODE_MAX = 999999

DEFAULT_MAX_ATTEMPTS = 10


def is_valid_code(code: object) -> bool:
    """True if code is a string of exactly six ASCII digits."""
    return isinstance(code, str) and CODE_PATTERN.fullmatch(code) is not None


def generate_code() -> str:
    """Draw a random code from 100000-999999."""
    return str(CODE_MIN + secrets.randbelow(CODE_MAX - CODE_MIN + 1))


def allocate(
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    now: datetime | None = None,
    conn: sqlite3.Connection | None = None,
) -> str:
    """Create an identity with a fresh random code and return the code.

    Raises:
        AllocationExhausted: every attempt collided; the caller should retry later.
    """
    for attempt in range(1, max_attempts + 1):
        code = generate_code()

        with db.store_operation("allocate"):
            if db.identity_exists(code, conn=conn):
                metrics.increment("allocation_collisions")
                logger.debug(f"Allocation attempt {attempt}: {code} is taken")
                continue

            try:
                db.create_identity(code, now=now, conn=conn)
            except sqlite3.IntegrityError:
                # Another allocator inserted the same code after our check
                metrics.increment("allocation_collisions")
                logger.info(f"Allocation attempt {attempt}: lost insert race for {code}")
                continue

        metrics.increment("identities_allocated")
        logger.info(f"Generated new user ID: {code}")
        return code

    logger.warning(f"Unable to generate unique ID after {max_attempts} attempts")
    raise AllocationExhausted()


def reserve(
    code: str,
    now: datetime | None = None,
    conn: sqlite3.Connection | None = None,
) -> dict:
    """Create an identity with a caller-chosen code.

    Raises:
        InvalidFormat: code is not six digits.
        AlreadyTaken: a live identity (marked or not) holds the code.
    """
    if not is_valid_code(code):
        raise InvalidFormat()

    with db.store_operation("reserve"):
        if db.identity_exists(code, conn=conn):
            raise AlreadyTaken()
        try:
            identity = db.create_identity(code, now=now, conn=conn)
        except sqlite3.IntegrityError:
            raise AlreadyTaken() from None

    metrics.increment("identities_allocated")
    logger.info(f"Created user with custom ID: {code}")
    return identity


def is_available(code: str, conn: sqlite3.Connection | None = None) -> bool:
    """Check whether a code could be reserved right now.

    Malformed codes are reported unavailable rather than raising.
    """
    if not is_valid_code(code):
        return False

    with db.store_operation("is_available"):
        return not db.identity_exists(code, conn=conn)
