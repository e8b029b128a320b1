"""add assignment due date

Revision ID: 0002_assignment_due_at
Revises: 0001_grading_engine
Create Date: 2026-10-19 15:00:00.000000
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "0002_assignment_due_at"
down_revision: Union[str, Sequence[str], None] = "0001_grading_engine"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.add_column("assignments", sa.Column("due_at", sa.DateTime(timezone=True), nullable=True))


def downgrade() -> None:
    op.drop_column("assignments", "due_at")
