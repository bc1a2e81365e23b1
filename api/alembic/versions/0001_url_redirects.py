"""url_redirects mapping store

Revision ID: 0001_url_redirects
Revises:
Create Date: 2026-10-19

Single table holding every legacy storefront URL, its resolved target and
where it is in the resolution lifecycle.
"""

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision = "0001_url_redirects"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "url_redirects",
        sa.Column("id", sa.String(64), nullable=False),
        sa.Column("old_url", sa.String(2048), nullable=False),
        sa.Column("new_url", sa.Text(), nullable=True),
        sa.Column(
            "source_type",
            sa.Enum(
                "category",
                "brand",
                "product",
                "page",
                name="source_type",
                native_enum=False,
            ),
            nullable=False,
        ),
        sa.Column(
            "status",
            sa.Enum(
                "unmapped",
                "mapped",
                "needs_review",
                name="redirect_status",
                native_enum=False,
            ),
            nullable=False,
            server_default="unmapped",
        ),
        sa.Column("notes", sa.Text(), nullable=False, server_default=""),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    # Middleware point lookups go through this index on every request
    op.create_index(
        "ix_url_redirects_old_url", "url_redirects", ["old_url"], unique=True
    )
    op.create_index("ix_url_redirects_status", "url_redirects", ["status"])


def downgrade() -> None:
    op.drop_index("ix_url_redirects_status", table_name="url_redirects")
    op.drop_index("ix_url_redirects_old_url", table_name="url_redirects")
    op.drop_table("url_redirects")
