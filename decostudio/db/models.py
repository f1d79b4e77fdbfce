from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import Boolean, CheckConstraint, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from decostudio.db.base import Base


GENERATION_PENDING = 'pending'
GENERATION_PROCESSING = 'processing'
GENERATION_COMPLETED = 'completed'
GENERATION_FAILED = 'failed'

NON_TERMINAL_STATUSES = (GENERATION_PENDING, GENERATION_PROCESSING)
TERMINAL_STATUSES = (GENERATION_COMPLETED, GENERATION_FAILED)

TX_PURCHASE = 'purchase'
TX_USAGE = 'usage'
TX_REFUND = 'refund'
TX_BONUS = 'bonus'


def new_id() -> str:
    return str(uuid.uuid4())


class UserAccount(Base):
    __tablename__ = 'user_accounts'

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    credits: Mapped[int] = mapped_column(Integer, default=0)
    payment_customer_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))

    transactions: Mapped[list['CreditTransaction']] = relationship(back_populates='user')
    generations: Mapped[list['Generation']] = relationship(back_populates='user')

    __table_args__ = (
        CheckConstraint('credits >= 0', name='ck_user_accounts_credits_non_negative'),
    )


class CreditTransaction(Base):
    __tablename__ = 'credit_transactions'

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[str] = mapped_column(ForeignKey('user_accounts.id'), index=True)
    amount: Mapped[int] = mapped_column(Integer)
    type: Mapped[str] = mapped_column(String(16))
    description: Mapped[str] = mapped_column(String(255), default='')
    # Not a foreign key: a generation whose submission is compensated is removed.
    generation_id: Mapped[str | None] = mapped_column(String(36), nullable=True, index=True)
    payment_session_id: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    idempotency_key: Mapped[str | None] = mapped_column(String(128), unique=True, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))

    user: Mapped['UserAccount'] = relationship(back_populates='transactions')


class Generation(Base):
    __tablename__ = 'generations'

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    user_id: Mapped[str] = mapped_column(ForeignKey('user_accounts.id'), index=True)
    style_slug: Mapped[str] = mapped_column(String(32))
    room_type: Mapped[str] = mapped_column(String(32))
    transform_mode: Mapped[str] = mapped_column(String(32))
    prompt: Mapped[str] = mapped_column(Text)
    cost_credits: Mapped[int] = mapped_column(Integer)
    input_image_url: Mapped[str] = mapped_column(String(1024))
    output_image_url: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    status: Mapped[str] = mapped_column(String(16), index=True)
    provider_job_id: Mapped[str | None] = mapped_column(String(128), nullable=True, index=True)
    fail_reason: Mapped[str | None] = mapped_column(String(255), nullable=True)
    hd_unlocked: Mapped[bool] = mapped_column(Boolean, default=False)
    payment_session_id: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))

    user: Mapped['UserAccount'] = relationship(back_populates='generations')

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES
