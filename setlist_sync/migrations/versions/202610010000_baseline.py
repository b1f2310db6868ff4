"""Baseline schema: sync queue, catalog entities, votes and operation records."""

from __future__ import annotations

from alembic import op

revision = "202610010000"
down_revision = None
branch_labels = None
depends_on = None


def _load_metadata() -> None:
    """Ensure SQLAlchemy metadata is populated before running DDL."""

    from setlist_sync import models  # noqa: F401


def upgrade() -> None:
    _load_metadata()

    from setlist_sync.db import metadata

    metadata.create_all(bind=op.get_bind(), checkfirst=True)


def downgrade() -> None:
    _load_metadata()

    from setlist_sync.db import metadata

    metadata.drop_all(bind=op.get_bind(), checkfirst=True)
