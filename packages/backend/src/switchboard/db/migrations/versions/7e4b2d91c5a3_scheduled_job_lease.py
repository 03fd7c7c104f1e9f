"""Scheduled job lease: started_at on scheduled_jobs

Revision ID: 7e4b2d91c5a3
Revises: 3c1f9a2b7d10
Create Date: 2026-10-19 14:03:11.402517
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '7e4b2d91c5a3'
down_revision: Union[str, None] = '3c1f9a2b7d10'
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    with op.batch_alter_table('scheduled_jobs') as batch_op:
        batch_op.add_column(sa.Column('started_at', sa.DateTime(timezone=True), nullable=True))

    # Jobs already running have no lease start; give them one so they can expire
    op.execute(
        "UPDATE scheduled_jobs SET started_at = run_at "
        "WHERE status = 'running' AND started_at IS NULL"
    )


def downgrade() -> None:
    with op.batch_alter_table('scheduled_jobs') as batch_op:
        batch_op.drop_column('started_at')
