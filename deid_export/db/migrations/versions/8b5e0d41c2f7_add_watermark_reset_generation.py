"""add reset_generation to omop_export_hwm

Revision ID: 8b5e0d41c2f7
Revises: 3f1c2a9d7e41
Create Date: 2026-10-18 16:40:02.551930

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


revision: str = '8b5e0d41c2f7'
down_revision: Union[str, None] = '3f1c2a9d7e41'
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.add_column(
        'omop_export_hwm',
        sa.Column('reset_generation', sa.Integer(), nullable=False, server_default='0'),
    )


def downgrade() -> None:
    op.drop_column('omop_export_hwm', 'reset_generation')
