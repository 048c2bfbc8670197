"""Identifier helpers shared by every handler.

Rows written by older app builds are keyed by whatever casing the client
sent, so lookups consider every casing an id may have been stored under.
New writes always use the lowercase canonical form. Once existing rows are
backfilled to lowercase, ``candidate_ids`` can collapse to ``[canonical_id]``.
"""

from __future__ import annotations

from typing import List, Optional

_BEARER_PREFIX = "Bearer "


def canonical_id(user_id: str) -> str:
    return user_id.lower()


def candidate_ids(user_id: str) -> List[str]:
    """Original, lower and upper casing of ``user_id``, deduplicated in that order."""
    variants: List[str] = []
    for variant in (user_id, user_id.lower(), user_id.upper()):
        if variant not in variants:
            variants.append(variant)
    return variants


def bearer_token(authorization: Optional[str]) -> str:
    if not authorization or not authorization.startswith(_BEARER_PREFIX):
        return ""
    return authorization[len(_BEARER_PREFIX):].strip()


def storage_path(user_id: str, name: str) -> str:
    return f"{canonical_id(user_id)}/{name}"
