"""
Wallet Ledger Service
=====================

Per-actor wallets backed by an append-only transaction log. The running
balance fields are only ever changed here, and always with SQL-side increments
so two concurrent credits cannot overwrite each other.

Balance mutation rules:
- a credit applies its delta when its transaction becomes ``completed``
- ``completed -> failed/cancelled`` reverses that delta exactly once
- withdrawals place an optimistic hold at request time; approval changes
  nothing, rejection releases the hold
"""

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Iterator, List, Optional, Tuple

from sqlalchemy import case, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from config import Config
from database import managed_session
from models import (
    ActorType, TransactionStatus, TransactionType, Wallet, WalletTransaction,
    WithdrawalRequest, WithdrawalStatus,
)
from utils.exceptions import (
    ConflictError, InsufficientFundsError, NotFoundError, PreconditionFailedError, ValidationError,
)

logger = logging.getLogger(__name__)

CREDIT_TYPES = {TransactionType.PAYMENT.value, TransactionType.BONUS.value, TransactionType.REFUND.value}
EARNING_TYPES = {TransactionType.PAYMENT.value, TransactionType.BONUS.value}
HELD_WITHDRAWAL_STATUSES = (WithdrawalStatus.PENDING.value, WithdrawalStatus.APPROVED.value)


@dataclass
class WithdrawalOutcome:
    request: WithdrawalRequest
    wallet: Wallet

    def to_dict(self) -> dict:
        return {"request": self.request.snapshot(), "wallet": self.wallet.snapshot()}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _money(amount) -> Decimal:
    try:
        value = Decimal(str(amount))
    except (InvalidOperation, TypeError, ValueError):
        raise ValidationError("Amount must be a number", {"field": "amount"})
    if not value.is_finite() or value < 0:
        raise ValidationError("Amount must be a non-negative number", {"field": "amount"})
    return value.quantize(Decimal("0.01"))


def _page_params(page, limit) -> Tuple[int, int]:
    limit = Config.DEFAULT_PAGE_SIZE if limit is None else limit
    try:
        page, limit = int(page), int(limit)
    except (TypeError, ValueError):
        raise ValidationError("page and limit must be integers", {"field": "page"})
    if page < 1:
        raise ValidationError("page must be 1 or greater", {"field": "page"})
    if not 1 <= limit <= Config.MAX_PAGE_SIZE:
        raise ValidationError(
            f"limit must be between 1 and {Config.MAX_PAGE_SIZE}", {"field": "limit"}
        )
    return page, limit


class WalletLedger:
    """Wallet operations for couriers and sellers"""

    def __init__(self, session_factory: Optional[sessionmaker] = None):
        self.session_factory = session_factory

    @contextmanager
    def _unit_of_work(self, session: Optional[Session]) -> Iterator[Session]:
        """Join the caller's session, or open and commit a new one"""
        if session is not None:
            yield session
            return
        with managed_session(self.session_factory) as own_session:
            yield own_session

    # ------------------------------------------------------------------
    # Wallet lookup
    # ------------------------------------------------------------------

    def get_or_create_wallet(self, actor_type: str, actor_id: str, session: Optional[Session] = None) -> Wallet:
        """Wallets are created lazily on first reference"""
        if actor_type not in (ActorType.COURIER.value, ActorType.SELLER.value):
            raise ValidationError(f"Unknown actor type: {actor_type}", {"field": "actor_type"})

        if session is not None:
            return self._get_or_create_in(session, actor_type, actor_id)

        try:
            with managed_session(self.session_factory) as own_session:
                return self._get_or_create_in(own_session, actor_type, actor_id)
        except IntegrityError:
            # Another request created it first
            with managed_session(self.session_factory) as own_session:
                return own_session.execute(
                    select(Wallet).where(Wallet.actor_type == actor_type, Wallet.actor_id == actor_id)
                ).scalar_one()

    def find_wallet(self, actor_type: str, actor_id: str, session: Optional[Session] = None) -> Optional[Wallet]:
        """Read-only lookup; never creates a wallet"""
        with self._unit_of_work(session) as s:
            return s.execute(
                select(Wallet).where(Wallet.actor_type == actor_type, Wallet.actor_id == actor_id)
            ).scalar_one_or_none()

    @staticmethod
    def _get_or_create_in(session: Session, actor_type: str, actor_id: str) -> Wallet:
        wallet = session.execute(
            select(Wallet).where(Wallet.actor_type == actor_type, Wallet.actor_id == actor_id)
        ).scalar_one_or_none()
        if wallet is not None:
            return wallet

        wallet = Wallet(
            actor_type=actor_type,
            actor_id=actor_id,
            balance=Decimal("0"),
            cumulative_earned=Decimal("0"),
            cumulative_withdrawn=Decimal("0"),
            cash_in_hand=Decimal("0"),
        )
        session.add(wallet)
        session.flush()
        logger.info(f"👛 WALLET_CREATED: {actor_type}:{actor_id} id={wallet.id}")
        return wallet

    def get_wallet(self, wallet_id: int, session: Optional[Session] = None) -> Wallet:
        with self._unit_of_work(session) as s:
            wallet = s.get(Wallet, wallet_id, populate_existing=True)
            if wallet is None:
                raise NotFoundError(f"Wallet {wallet_id} not found")
            return wallet

    # ------------------------------------------------------------------
    # Balance deltas
    # ------------------------------------------------------------------

    @staticmethod
    def _apply_delta(session: Session, wallet_id: int, transaction_type: str, amount: Decimal, reverse: bool = False):
        """Apply (or reverse) the balance effect of a completed transaction"""
        if transaction_type in CREDIT_TYPES:
            sign = -1 if reverse else 1
            values = {
                "balance": Wallet.balance + sign * amount,
                "cumulative_earned": Wallet.cumulative_earned + sign * amount,
            }
        elif transaction_type == TransactionType.DEDUCTION.value:
            sign = 1 if reverse else -1
            values = {"balance": Wallet.balance + sign * amount}
        else:
            raise PreconditionFailedError(f"Transaction type {transaction_type} has no direct balance delta")

        session.execute(
            update(Wallet)
            .where(Wallet.id == wallet_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )

    # ------------------------------------------------------------------
    # Credits
    # ------------------------------------------------------------------

    def credit(
        self,
        wallet_id: int,
        amount,
        transaction_type: str,
        order_id: Optional[str] = None,
        as_completed: bool = True,
        description: Optional[str] = None,
        session: Optional[Session] = None,
    ) -> WalletTransaction:
        """Append a ledger entry; completed entries apply their delta immediately"""
        amount_dec = _money(amount)
        if transaction_type not in CREDIT_TYPES | {TransactionType.DEDUCTION.value}:
            raise ValidationError(f"Cannot credit with transaction type {transaction_type}", {"field": "type"})

        with self._unit_of_work(session) as s:
            self.get_wallet(wallet_id, session=s)
            status = TransactionStatus.COMPLETED.value if as_completed else TransactionStatus.PENDING.value
            transaction = WalletTransaction(
                wallet_id=wallet_id,
                amount=amount_dec,
                transaction_type=transaction_type,
                status=status,
                order_id=order_id,
                description=description,
                processed_at=_utcnow() if as_completed else None,
            )
            s.add(transaction)
            if as_completed:
                self._apply_delta(s, wallet_id, transaction_type, amount_dec)
            s.flush()

            logger.info(
                f"💰 WALLET_CREDIT: wallet={wallet_id} type={transaction_type} amount={amount_dec} "
                f"status={status} order={order_id}"
            )
            return transaction

    def complete_transaction(self, transaction_id: int, session: Optional[Session] = None) -> WalletTransaction:
        """pending -> completed, applying the balance delta once"""
        with self._unit_of_work(session) as s:
            transaction = self._get_transaction(s, transaction_id)
            if transaction.transaction_type == TransactionType.WITHDRAWAL.value:
                raise PreconditionFailedError("Withdrawal transactions are completed through withdrawal approval")
            if transaction.status == TransactionStatus.COMPLETED.value:
                return transaction
            if transaction.status != TransactionStatus.PENDING.value:
                raise PreconditionFailedError(
                    f"Transaction {transaction_id} is {transaction.status} and cannot be completed"
                )

            claimed = s.execute(
                update(WalletTransaction)
                .where(
                    WalletTransaction.id == transaction_id,
                    WalletTransaction.status == TransactionStatus.PENDING.value,
                )
                .values(status=TransactionStatus.COMPLETED.value, processed_at=_utcnow())
                .execution_options(synchronize_session=False)
            )
            if claimed.rowcount == 1:
                self._apply_delta(s, transaction.wallet_id, transaction.transaction_type, Decimal(str(transaction.amount)))
                logger.info(f"✅ TRANSACTION_COMPLETED: id={transaction_id} wallet={transaction.wallet_id}")
            s.refresh(transaction)
            return transaction

    def cancel_transaction(
        self,
        transaction_id: int,
        final_status: str = TransactionStatus.CANCELLED.value,
        session: Optional[Session] = None,
    ) -> WalletTransaction:
        """Mark a transaction failed/cancelled, reversing a completed delta once"""
        if final_status not in (TransactionStatus.FAILED.value, TransactionStatus.CANCELLED.value):
            raise ValidationError("Final status must be 'failed' or 'cancelled'", {"field": "status"})

        with self._unit_of_work(session) as s:
            transaction = self._get_transaction(s, transaction_id)
            if transaction.transaction_type == TransactionType.WITHDRAWAL.value:
                raise PreconditionFailedError("Withdrawal transactions are cancelled through withdrawal rejection")
            if transaction.status in (TransactionStatus.FAILED.value, TransactionStatus.CANCELLED.value):
                return transaction

            previous_status = transaction.status
            claimed = s.execute(
                update(WalletTransaction)
                .where(WalletTransaction.id == transaction_id, WalletTransaction.status == previous_status)
                .values(status=final_status, processed_at=_utcnow())
                .execution_options(synchronize_session=False)
            )
            if claimed.rowcount == 1 and previous_status == TransactionStatus.COMPLETED.value:
                self._apply_delta(
                    s, transaction.wallet_id, transaction.transaction_type, Decimal(str(transaction.amount)), reverse=True
                )
                logger.warning(
                    f"↩️ TRANSACTION_REVERSED: id={transaction_id} wallet={transaction.wallet_id} "
                    f"amount={transaction.amount} -> {final_status}"
                )
            s.refresh(transaction)
            return transaction

    @staticmethod
    def _get_transaction(session: Session, transaction_id: int) -> WalletTransaction:
        transaction = session.get(WalletTransaction, transaction_id, populate_existing=True)
        if transaction is None:
            raise NotFoundError(f"Transaction {transaction_id} not found")
        return transaction

    def find_order_payment(self, wallet_id: int, order_id: str, session: Optional[Session] = None) -> Optional[WalletTransaction]:
        """Idempotency guard: the existing payment entry for an order on this wallet"""
        with self._unit_of_work(session) as s:
            return s.execute(
                select(WalletTransaction)
                .where(
                    WalletTransaction.wallet_id == wallet_id,
                    WalletTransaction.order_id == order_id,
                    WalletTransaction.transaction_type == TransactionType.PAYMENT.value,
                    WalletTransaction.status != TransactionStatus.CANCELLED.value,
                    WalletTransaction.status != TransactionStatus.FAILED.value,
                )
                .order_by(WalletTransaction.id)
                .limit(1)
            ).scalar_one_or_none()

    def record_cash_collected(self, wallet_id: int, amount, order_id: Optional[str] = None, session: Optional[Session] = None):
        """COD custody: cash_in_hand only ever increases here"""
        amount_dec = _money(amount)
        with self._unit_of_work(session) as s:
            s.execute(
                update(Wallet)
                .where(Wallet.id == wallet_id)
                .values(cash_in_hand=Wallet.cash_in_hand + amount_dec)
                .execution_options(synchronize_session=False)
            )
            logger.info(f"💵 CASH_COLLECTED: wallet={wallet_id} amount={amount_dec} order={order_id}")

    # ------------------------------------------------------------------
    # Withdrawals
    # ------------------------------------------------------------------

    def request_withdrawal(self, wallet_id: int, amount) -> WithdrawalOutcome:
        amount_dec = _money(amount)
        if amount_dec <= 0:
            raise ValidationError("Withdrawal amount must be greater than zero", {"field": "amount"})
        if amount_dec < Config.MIN_WITHDRAWAL_AMOUNT:
            raise ValidationError(
                f"Minimum withdrawal amount is {Config.MIN_WITHDRAWAL_AMOUNT}",
                {"field": "amount", "minimum": str(Config.MIN_WITHDRAWAL_AMOUNT)},
            )

        with managed_session(self.session_factory) as session:
            self.get_wallet(wallet_id, session=session)

            pending = session.execute(
                select(WithdrawalRequest.id).where(
                    WithdrawalRequest.wallet_id == wallet_id,
                    WithdrawalRequest.status == WithdrawalStatus.PENDING.value,
                )
            ).first()
            if pending is not None:
                raise ConflictError(
                    "A withdrawal request is already pending for this wallet",
                    {"pending_request_id": pending.id},
                )

            # Optimistic hold, guarded so the balance can never go below zero
            held = session.execute(
                update(Wallet)
                .where(Wallet.id == wallet_id, Wallet.balance >= amount_dec)
                .values(
                    balance=Wallet.balance - amount_dec,
                    cumulative_withdrawn=Wallet.cumulative_withdrawn + amount_dec,
                )
                .execution_options(synchronize_session=False)
            )
            if held.rowcount == 0:
                wallet = self.get_wallet(wallet_id, session=session)
                raise InsufficientFundsError(
                    "Insufficient balance for withdrawal",
                    {"balance": str(wallet.balance), "requested": str(amount_dec)},
                )

            transaction = WalletTransaction(
                wallet_id=wallet_id,
                amount=amount_dec,
                transaction_type=TransactionType.WITHDRAWAL.value,
                status=TransactionStatus.PENDING.value,
                description="Withdrawal request",
            )
            session.add(transaction)
            session.flush()

            request = WithdrawalRequest(
                wallet_id=wallet_id,
                amount=amount_dec,
                status=WithdrawalStatus.PENDING.value,
                transaction_id=transaction.id,
            )
            session.add(request)
            try:
                session.flush()
            except IntegrityError as e:
                # A concurrent request won the one-pending-per-wallet index
                raise ConflictError("A withdrawal request is already pending for this wallet") from e

            wallet = self.get_wallet(wallet_id, session=session)
            logger.info(
                f"🏦 WITHDRAWAL_REQUESTED: request={request.id} wallet={wallet_id} amount={amount_dec} "
                f"balance_after_hold={wallet.balance}"
            )
            return WithdrawalOutcome(request=request, wallet=wallet)

    def _get_pending_request(self, session: Session, request_id: int) -> WithdrawalRequest:
        request = session.get(WithdrawalRequest, request_id, populate_existing=True)
        if request is None:
            raise NotFoundError(f"Withdrawal request {request_id} not found")
        if request.status != WithdrawalStatus.PENDING.value:
            raise PreconditionFailedError(
                f"Withdrawal request is already {request.status.lower()}",
                {"status": request.status},
            )
        return request

    def _set_linked_transaction(self, session: Session, request: WithdrawalRequest, status: str):
        if request.transaction_id is None:
            return
        transaction = session.get(WalletTransaction, request.transaction_id)
        if transaction is not None:
            transaction.status = status
            transaction.processed_at = _utcnow()

    def approve_withdrawal(self, request_id: int) -> WithdrawalOutcome:
        """Pending -> Approved; the hold placed at request time stands"""
        with managed_session(self.session_factory) as session:
            request = self._get_pending_request(session, request_id)
            request.status = WithdrawalStatus.APPROVED.value
            request.processed_at = _utcnow()
            self._set_linked_transaction(session, request, TransactionStatus.COMPLETED.value)
            session.flush()

            wallet = self.get_wallet(request.wallet_id, session=session)
            logger.info(f"✅ WITHDRAWAL_APPROVED: request={request_id} wallet={request.wallet_id} amount={request.amount}")
            return WithdrawalOutcome(request=request, wallet=wallet)

    def reject_withdrawal(self, request_id: int, reason: Optional[str] = None) -> WithdrawalOutcome:
        """Pending -> Rejected; releases the hold"""
        with managed_session(self.session_factory) as session:
            request = self._get_pending_request(session, request_id)
            amount = Decimal(str(request.amount))

            request.status = WithdrawalStatus.REJECTED.value
            request.rejection_reason = (reason or "").strip() or None
            request.processed_at = _utcnow()
            self._set_linked_transaction(session, request, TransactionStatus.CANCELLED.value)

            session.execute(
                update(Wallet)
                .where(Wallet.id == request.wallet_id)
                .values(
                    balance=Wallet.balance + amount,
                    cumulative_withdrawn=case(
                        (Wallet.cumulative_withdrawn >= amount, Wallet.cumulative_withdrawn - amount),
                        else_=Decimal("0"),
                    ),
                )
                .execution_options(synchronize_session=False)
            )
            session.flush()

            wallet = self.get_wallet(request.wallet_id, session=session)
            logger.warning(
                f"❌ WITHDRAWAL_REJECTED: request={request_id} wallet={request.wallet_id} amount={amount} "
                f"reason={request.rejection_reason!r} balance_restored={wallet.balance}"
            )
            return WithdrawalOutcome(request=request, wallet=wallet)

    def mark_withdrawal_processed(self, request_id: int) -> WithdrawalOutcome:
        """Approved -> Processed once the payout has left the platform"""
        with managed_session(self.session_factory) as session:
            request = session.get(WithdrawalRequest, request_id, populate_existing=True)
            if request is None:
                raise NotFoundError(f"Withdrawal request {request_id} not found")
            if request.status == WithdrawalStatus.PROCESSED.value:
                wallet = self.get_wallet(request.wallet_id, session=session)
                return WithdrawalOutcome(request=request, wallet=wallet)
            if request.status != WithdrawalStatus.APPROVED.value:
                raise PreconditionFailedError(
                    f"Only approved withdrawals can be processed (status={request.status})",
                    {"status": request.status},
                )
            request.status = WithdrawalStatus.PROCESSED.value
            request.processed_at = _utcnow()
            session.flush()

            wallet = self.get_wallet(request.wallet_id, session=session)
            logger.info(f"🏁 WITHDRAWAL_PROCESSED: request={request_id} wallet={request.wallet_id}")
            return WithdrawalOutcome(request=request, wallet=wallet)

    # ------------------------------------------------------------------
    # Read models
    # ------------------------------------------------------------------

    def held_withdrawals_total(self, wallet_id: int, session: Optional[Session] = None) -> Decimal:
        with self._unit_of_work(session) as s:
            total = s.execute(
                select(func.coalesce(func.sum(WithdrawalRequest.amount), 0)).where(
                    WithdrawalRequest.wallet_id == wallet_id,
                    WithdrawalRequest.status.in_(HELD_WITHDRAWAL_STATUSES),
                )
            ).scalar_one()
            return Decimal(str(total))

    def available_balance(self, wallet_id: int, period_earnings, session: Optional[Session] = None) -> Decimal:
        """Withdrawable now: period earnings minus Pending and Approved requests, floored at zero"""
        earnings = Decimal(str(period_earnings))
        held = self.held_withdrawals_total(wallet_id, session=session)
        return max(Decimal("0.00"), (earnings - held).quantize(Decimal("0.01")))

    def period_earnings(self, wallet_id: int, since: Optional[datetime] = None, session: Optional[Session] = None) -> Decimal:
        """Completed payment and bonus credits, optionally since a point in time"""
        with self._unit_of_work(session) as s:
            query = select(func.coalesce(func.sum(WalletTransaction.amount), 0)).where(
                WalletTransaction.wallet_id == wallet_id,
                WalletTransaction.transaction_type.in_(EARNING_TYPES),
                WalletTransaction.status == TransactionStatus.COMPLETED.value,
            )
            if since is not None:
                query = query.where(WalletTransaction.created_at >= since)
            return Decimal(str(s.execute(query).scalar_one()))

    def transaction_history(
        self,
        wallet_id: int,
        page: int = 1,
        limit: Optional[int] = None,
        session: Optional[Session] = None,
    ) -> dict:
        """Newest-first ledger entries, one page at a time"""
        page, limit = _page_params(page, limit)
        with self._unit_of_work(session) as s:
            self.get_wallet(wallet_id, session=s)
            total = s.execute(
                select(func.count(WalletTransaction.id)).where(WalletTransaction.wallet_id == wallet_id)
            ).scalar_one()
            rows = s.execute(
                select(WalletTransaction)
                .where(WalletTransaction.wallet_id == wallet_id)
                .order_by(WalletTransaction.id.desc())
                .offset((page - 1) * limit)
                .limit(limit)
            ).scalars().all()
            return {
                "transactions": [t.snapshot() for t in rows],
                "pagination": {
                    "page": page,
                    "limit": limit,
                    "total": total,
                    "pages": (total + limit - 1) // limit,
                },
            }

    def list_withdrawal_requests(self, wallet_id: int, status: Optional[str] = None) -> List[WithdrawalRequest]:
        """Withdrawal requests for a wallet, newest first, optionally filtered by status"""
        if status is not None:
            status = str(status).strip().capitalize()
            if status not in {s.value for s in WithdrawalStatus}:
                raise ValidationError(
                    f"Unknown withdrawal status: {status}",
                    {"field": "status", "allowed": [s.value for s in WithdrawalStatus]},
                )

        with managed_session(self.session_factory) as session:
            self.get_wallet(wallet_id, session=session)
            query = (
                select(WithdrawalRequest)
                .where(WithdrawalRequest.wallet_id == wallet_id)
                .order_by(WithdrawalRequest.id.desc())
            )
            if status is not None:
                query = query.where(WithdrawalRequest.status == status)
            return list(session.execute(query).scalars().all())

    def wallet_summary(
        self,
        actor_type: str,
        actor_id: str,
        since: Optional[datetime] = None,
        page: int = 1,
        limit: Optional[int] = None,
    ) -> dict:
        with managed_session(self.session_factory) as session:
            wallet = self.get_or_create_wallet(actor_type, actor_id, session=session)
            earnings = self.period_earnings(wallet.id, since=since, session=session)
            history = self.transaction_history(wallet.id, page=page, limit=limit, session=session)
            wallet = self.get_wallet(wallet.id, session=session)
            return {
                "wallet": wallet.snapshot(),
                "period_earnings": str(earnings),
                "available_balance": str(self.available_balance(wallet.id, earnings, session=session)),
                **history,
            }
