from __future__ import annotations

from typing import List, Optional

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from decostudio.db.models import (
    TX_BONUS,
    TX_PURCHASE,
    TX_REFUND,
    TX_USAGE,
    CreditTransaction,
    UserAccount,
)
from decostudio.errors import InsufficientCreditsError, UserNotFound, ValidationError
from decostudio.utils.logging import get_logger
from decostudio.utils.time import utcnow


logger = get_logger('credits')

CREDIT_TYPES = (TX_PURCHASE, TX_REFUND, TX_BONUS)


class CreditLedger:
    """Per-user balance plus append-only transaction log.

    Balance changes are conditional single-statement updates, never a
    read-compute-write in Python. The transaction row is written in the same
    session so both land in one commit. The caller owns the commit.
    """

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get_account(self, user_id: str) -> Optional[UserAccount]:
        return await self.session.get(UserAccount, user_id)

    async def ensure_account(
        self,
        user_id: str,
        email: Optional[str] = None,
        signup_bonus: int = 0,
    ) -> UserAccount:
        account = await self.get_account(user_id)
        if account:
            if email and account.email != email:
                account.email = email
            return account

        now = utcnow()
        account = UserAccount(
            id=user_id,
            email=email,
            credits=0,
            created_at=now,
            updated_at=now,
        )
        self.session.add(account)
        await self.session.flush()
        if signup_bonus > 0:
            await self.add(
                user_id,
                signup_bonus,
                TX_BONUS,
                'Signup bonus',
                idempotency_key=f'signup:{user_id}',
            )
        logger.info('account_created', user_id=user_id, signup_bonus=signup_bonus)
        return account

    async def get_balance(self, user_id: str) -> int:
        result = await self.session.execute(select(UserAccount.credits).where(UserAccount.id == user_id))
        balance = result.scalar_one_or_none()
        if balance is None:
            raise UserNotFound(user_id)
        return int(balance)

    async def has_enough_credits(self, user_id: str, amount: int) -> bool:
        return await self.get_balance(user_id) >= amount

    async def deduct(
        self,
        user_id: str,
        amount: int,
        description: str,
        generation_id: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> int:
        if amount <= 0:
            raise ValidationError('Deducted amount must be positive', {'amount': amount})

        stmt = (
            update(UserAccount)
            .where(UserAccount.id == user_id, UserAccount.credits >= amount)
            .values(credits=UserAccount.credits - amount, updated_at=utcnow())
            .returning(UserAccount.credits)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        new_balance = result.scalar_one_or_none()
        if new_balance is None:
            current = await self.get_balance(user_id)
            logger.info('credits_insufficient', user_id=user_id, current=current, required=amount)
            raise InsufficientCreditsError(current, amount)

        self._append(
            user_id,
            -amount,
            TX_USAGE,
            description,
            generation_id=generation_id,
            idempotency_key=idempotency_key,
        )
        await self.session.flush()
        logger.info(
            'credits_deducted',
            user_id=user_id,
            amount=amount,
            balance=new_balance,
            generation_id=generation_id,
        )
        return int(new_balance)

    async def add(
        self,
        user_id: str,
        amount: int,
        tx_type: str,
        description: str,
        payment_session_id: Optional[str] = None,
        generation_id: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> int:
        if amount <= 0:
            raise ValidationError('Added amount must be positive', {'amount': amount})
        if tx_type not in CREDIT_TYPES:
            raise ValidationError(f'Invalid credit type: {tx_type}', {'type': tx_type})

        stmt = (
            update(UserAccount)
            .where(UserAccount.id == user_id)
            .values(credits=UserAccount.credits + amount, updated_at=utcnow())
            .returning(UserAccount.credits)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        new_balance = result.scalar_one_or_none()
        if new_balance is None:
            raise UserNotFound(user_id)

        self._append(
            user_id,
            amount,
            tx_type,
            description,
            generation_id=generation_id,
            payment_session_id=payment_session_id,
            idempotency_key=idempotency_key,
        )
        # Flush here so a duplicate idempotency key fails inside the caller's transaction.
        await self.session.flush()
        logger.info(
            'credits_added',
            user_id=user_id,
            amount=amount,
            type=tx_type,
            balance=new_balance,
            generation_id=generation_id,
            payment_session_id=payment_session_id,
        )
        return int(new_balance)

    async def get_history(self, user_id: str, limit: int = 50) -> List[CreditTransaction]:
        if limit <= 0:
            raise ValidationError('limit must be positive', {'limit': limit})
        result = await self.session.execute(
            select(CreditTransaction)
            .where(CreditTransaction.user_id == user_id)
            .order_by(CreditTransaction.created_at.desc(), CreditTransaction.id.desc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def has_session_transaction(self, payment_session_id: str) -> bool:
        result = await self.session.execute(
            select(CreditTransaction.id)
            .where(CreditTransaction.payment_session_id == payment_session_id)
            .limit(1)
        )
        return result.scalar_one_or_none() is not None

    async def count_refunds(self, generation_id: str) -> int:
        result = await self.session.execute(
            select(func.count(CreditTransaction.id))
            .where(CreditTransaction.generation_id == generation_id)
            .where(CreditTransaction.type == TX_REFUND)
        )
        return int(result.scalar_one() or 0)

    async def ledger_sum(self, user_id: str) -> int:
        result = await self.session.execute(
            select(func.coalesce(func.sum(CreditTransaction.amount), 0))
            .where(CreditTransaction.user_id == user_id)
        )
        return int(result.scalar_one() or 0)

    def _append(
        self,
        user_id: str,
        amount: int,
        tx_type: str,
        description: str,
        generation_id: Optional[str] = None,
        payment_session_id: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> CreditTransaction:
        entry = CreditTransaction(
            user_id=user_id,
            amount=amount,
            type=tx_type,
            description=description[:255],
            generation_id=generation_id,
            payment_session_id=payment_session_id,
            idempotency_key=idempotency_key,
            created_at=utcnow(),
        )
        self.session.add(entry)
        return entry
