"""Email verification code columns on users.

Revision ID: 002_email_verification
Revises: 001_initial
Create Date: 2025-06-10

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


revision: str = "002_email_verification"
down_revision: Union[str, None] = "001_initial"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.add_column("users", sa.Column("verification_code_hash", sa.String(), nullable=True))
    op.add_column("users", sa.Column("verification_expires_at", sa.DateTime(), nullable=True))


def downgrade() -> None:
    op.drop_column("users", "verification_expires_at")
    op.drop_column("users", "verification_code_hash")
