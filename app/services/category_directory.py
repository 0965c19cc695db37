"""
Performance Indicator Platform
Category directory — read-only lookup of the category tree.

Category administration lives elsewhere; the lifecycle engine only needs to
resolve an id to its level, parent and title when an indicator is created.
Swap the implementation through ``app.extensions["category_directory"]``.
"""

from __future__ import annotations

from dataclasses import dataclass

from flask import current_app

from app.models import db
from app.models.category import Category


@dataclass(frozen=True)
class CategoryRef:
    id: int
    level: int
    parent_id: int | None
    title: str


class SqlCategoryDirectory:
    """Resolves categories from the ``categories`` table."""

    def get_by_id(self, category_id) -> CategoryRef | None:
        try:
            pk = int(category_id)
        except (TypeError, ValueError):
            return None
        category = db.session.get(Category, pk)
        if category is None:
            return None
        return CategoryRef(
            id=category.id,
            level=category.level,
            parent_id=category.parent_id,
            title=category.title,
        )


def get_category_directory():
    return current_app.extensions["category_directory"]
