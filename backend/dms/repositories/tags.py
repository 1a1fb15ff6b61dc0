"""
Tag persistence — normalisation and get-or-create.

Two uploads may create the same new tag at the same time. The UNIQUE
constraint on tags.name_key decides the winner; the loser sees an
IntegrityError inside its savepoint, rolls back just that insert and re-reads
the winner's row.
"""

from __future__ import annotations

import logging
import re
from typing import Iterable

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from dms.models.documents import Tag

logger = logging.getLogger(__name__)

MAX_TAG_LENGTH = 64

_WHITESPACE = re.compile(r"\s+")


def normalize_tag_name(raw: str) -> str:
    """Trim and collapse internal whitespace runs to a single space."""
    return _WHITESPACE.sub(" ", raw).strip()


def normalize_tag_names(raw: Iterable[str]) -> list[str]:
    """Normalise, drop blanks and de-duplicate case-insensitively (first spelling wins)."""
    seen: set[str] = set()
    names: list[str] = []
    for item in raw:
        name = normalize_tag_name(item or "")
        if not name:
            continue
        key = name.lower()
        if key in seen:
            continue
        seen.add(key)
        names.append(name)
    return names


class TagRepository:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def _find_by_key(self, key: str) -> Tag | None:
        result = await self._session.execute(select(Tag).where(Tag.name_key == key))
        return result.scalars().first()

    async def get_or_create(self, names: Iterable[str]) -> list[Tag]:
        tags: list[Tag] = []
        for name in normalize_tag_names(names):
            tags.append(await self._get_or_create_one(name))
        return tags

    async def _get_or_create_one(self, name: str) -> Tag:
        key = name.lower()
        existing = await self._find_by_key(key)
        if existing is not None:
            return existing

        tag = Tag(name=name, name_key=key)
        try:
            async with self._session.begin_nested():
                self._session.add(tag)
                await self._session.flush()
        except IntegrityError:
            # Lost the race to a concurrent creator
            logger.info("Tag created concurrently, reloading | key=%s", key)
            winner = await self._find_by_key(key)
            if winner is None:
                raise
            return winner

        logger.debug("Tag created | id=%s name=%s", tag.id, name)
        return tag
