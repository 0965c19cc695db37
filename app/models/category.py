"""
Performance Indicator Platform
Category hierarchy model.

Levels:
    1  main category
    2  sub-category (child of a level-1 category)
    3  indicator leaf (its title becomes an Indicator's immutable title)
    4  reserved for deeper classification
"""

from datetime import datetime, timezone

from app.models import db

CATEGORY_LEVELS = {1, 2, 3, 4}


class Category(db.Model):
    """One node of the category tree. Looked up, never cascaded by indicators."""

    __tablename__ = "categories"

    id = db.Column(db.Integer, primary_key=True)
    code = db.Column(db.String(50), nullable=False, unique=True)
    title = db.Column(db.String(300), nullable=False)
    level = db.Column(db.Integer, nullable=False, default=1)
    parent_id = db.Column(
        db.Integer,
        db.ForeignKey("categories.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    __table_args__ = (
        db.CheckConstraint("level IN (1, 2, 3, 4)", name="ck_category_level"),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "code": self.code,
            "title": self.title,
            "level": self.level,
            "parent_id": self.parent_id,
        }

    def __repr__(self):
        return f"<Category {self.code} L{self.level}>"
