"""Room identifiers and shareable join links."""
from __future__ import annotations

import random
import string
from typing import Optional
from urllib.parse import parse_qs, urlsplit

from callshared.protocol import LINK_PATH, ROOM_QUERY_PARAM

ROOM_ID_ALPHABET = string.digits + string.ascii_lowercase
MIN_ROOM_ID_LENGTH = 5
MAX_ROOM_ID_LENGTH = 7
DEFAULT_ROOM_ID_LENGTH = 6


def generate_room_id(length: int = DEFAULT_ROOM_ID_LENGTH) -> str:
    """Return a short lowercase base-36 room id.

    Not cryptographically strong; collisions are tolerated because rooms are
    created rarely and independently.
    """
    length = max(MIN_ROOM_ID_LENGTH, min(length, MAX_ROOM_ID_LENGTH))
    return "".join(random.choice(ROOM_ID_ALPHABET) for _ in range(length))


def build_shareable_link(origin: str, room_id: str) -> str:
    return f"{origin.rstrip('/')}{LINK_PATH}?{ROOM_QUERY_PARAM}={room_id}"


def room_from_url(url: Optional[str]) -> Optional[str]:
    """Extract the ``room`` query parameter from a page URL, if any."""
    if not url:
        return None
    query = urlsplit(url).query
    values = parse_qs(query).get(ROOM_QUERY_PARAM)
    if not values:
        return None
    room_id = values[0].strip()
    return room_id or None
