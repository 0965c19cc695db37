"""
Performance Indicator Platform
Identity model — users referenced by indicators, notes and reviews.

Credential and session management live outside this service; the table only
carries what the lifecycle engine needs to resolve an actor (role) and to
reach a person (name, email).
"""

from datetime import datetime, timezone

from app.models import db


class User(db.Model):
    __tablename__ = "users"

    id = db.Column(db.Integer, primary_key=True)
    email = db.Column(db.String(200), nullable=False, unique=True)
    name = db.Column(db.String(200), nullable=False, default="")
    role = db.Column(
        db.String(30), nullable=False, default="member",
        comment="member | admin | superadmin (case-insensitive on read)",
    )
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime, default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(
        db.DateTime,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    __table_args__ = (
        db.Index("ix_users_email", "email"),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "email": self.email,
            "name": self.name,
            "role": self.role,
            "is_active": self.is_active,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<User {self.id}: {self.email}>"
