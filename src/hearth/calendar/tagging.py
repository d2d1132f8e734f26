"""Keyword auto-tagging of synced events."""

from __future__ import annotations

import uuid
from collections.abc import Iterable

from hearth.calendar.models import KidTag


def auto_tag(title: str, tags: Iterable[KidTag]) -> uuid.UUID | None:
    """Return the id of the first tag whose keyword occurs in *title*.

    Matching is a case-insensitive substring test. Tags are tried in the order
    given and keywords in list order; blank keywords never match.
    """
    title_folded = title.casefold()
    for tag in tags:
        for keyword in tag.keywords:
            needle = keyword.strip().casefold()
            if needle and needle in title_folded:
                return tag.id
    return None
