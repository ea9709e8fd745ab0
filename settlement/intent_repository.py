# settlement/intent_repository.py

import logging
from contextlib import contextmanager
from datetime import timedelta
from typing import Iterator, Optional

from sqlalchemy import or_, update
from sqlalchemy.orm import Session, sessionmaker

from settlement.entities import (
    NEXT_STATUS,
    TERMINAL_STATUSES,
    IntentStatus,
    PaymentIntent,
    utcnow,
)
from settlement.errors import IntentNotFound

logger = logging.getLogger("settlement_repository")


@contextmanager
def session_scope(session_factory: sessionmaker, session: Optional[Session] = None) -> Iterator[Session]:
    """
    Yield `session` untouched when the caller already owns a unit of work,
    otherwise open one that commits on success and rolls back on error.
    """
    if session is not None:
        yield session
        return

    own = session_factory()
    try:
        yield own
        own.commit()
    except Exception:
        own.rollback()
        raise
    finally:
        own.close()


class IntentRepository:
    """
    Typed access to payment_intents. Every status write is guarded on the
    status the caller believes is current, so a stale worker can never move
    an intent backwards or touch a terminal one.
    """

    def __init__(self, session_factory: sessionmaker):
        self.SessionFactory = session_factory

    @contextmanager
    def transaction(self) -> Iterator[Session]:
        with session_scope(self.SessionFactory) as session:
            yield session

    def create(self, **fields) -> str:
        fields.setdefault("status", IntentStatus.CREATED.value)
        intent = PaymentIntent(**fields)
        with session_scope(self.SessionFactory) as session:
            session.add(intent)
            session.flush()
            return intent.intent_id

    def find(self, intent_id: str) -> Optional[PaymentIntent]:
        session = self.SessionFactory()
        try:
            intent = session.get(PaymentIntent, str(intent_id))
            if intent is not None:
                session.expunge(intent)
            return intent
        finally:
            session.close()

    def get(self, intent_id: str) -> PaymentIntent:
        intent = self.find(intent_id)
        if intent is None:
            raise IntentNotFound(intent_id)
        return intent

    def statuses(self, intent_ids: list[str]) -> dict[str, str]:
        if not intent_ids:
            return {}
        session = self.SessionFactory()
        try:
            rows = (
                session.query(PaymentIntent.intent_id, PaymentIntent.status)
                .filter(PaymentIntent.intent_id.in_(intent_ids))
                .all()
            )
            return {intent_id: status for (intent_id, status) in rows}
        finally:
            session.close()

    def advance(
        self,
        intent_id: str,
        from_status: str,
        to_status: str,
        *,
        owner: Optional[str] = None,
        session: Optional[Session] = None,
        **fields,
    ) -> bool:
        """
        Compare-and-swap `from_status` -> `to_status`, writing `fields` along.
        With `owner`, the row must also still be leased to that owner.
        Returns False when either guard no longer holds.
        """
        if NEXT_STATUS.get(from_status) != to_status:
            raise ValueError(f"Illegal transition {from_status} -> {to_status}")
        if to_status in TERMINAL_STATUSES:
            fields.update(lease_owner=None, lease_expires_at=None)

        stmt = (
            update(PaymentIntent)
            .where(PaymentIntent.intent_id == str(intent_id))
            .where(PaymentIntent.status == from_status)
        )
        if owner is not None:
            stmt = stmt.where(PaymentIntent.lease_owner == owner)
        stmt = stmt.values(status=to_status, **fields).execution_options(synchronize_session=False)
        with session_scope(self.SessionFactory, session) as s:
            moved = s.execute(stmt).rowcount == 1

        if moved:
            logger.info("Intent %s: %s -> %s", intent_id, from_status, to_status)
        else:
            logger.warning("Intent %s: guard %s -> %s lost (already advanced elsewhere)",
                           intent_id, from_status, to_status)
        return moved

    def mark_failed(
        self,
        intent_id: str,
        reason: str,
        *,
        refunded: bool = False,
        owner: Optional[str] = None,
        session: Optional[Session] = None,
    ) -> bool:
        """
        Move a working intent to FAILED. With `owner`, only while the lease
        is unowned or still held by that owner.
        """
        values = dict(
            status=IntentStatus.FAILED.value,
            failure_reason=reason,
            lease_owner=None,
            lease_expires_at=None,
        )
        if refunded:
            values["refunded_at"] = utcnow()
        stmt = (
            update(PaymentIntent)
            .where(PaymentIntent.intent_id == str(intent_id))
            .where(PaymentIntent.status.not_in(TERMINAL_STATUSES))
        )
        if owner is not None:
            stmt = stmt.where(or_(PaymentIntent.lease_owner.is_(None), PaymentIntent.lease_owner == owner))
        stmt = stmt.values(**values).execution_options(synchronize_session=False)
        with session_scope(self.SessionFactory, session) as s:
            return s.execute(stmt).rowcount == 1

    # -------- per-intent lease --------
    def claim(self, intent_id: str, owner: str, lease_seconds: int) -> bool:
        now = utcnow()
        stmt = (
            update(PaymentIntent)
            .where(PaymentIntent.intent_id == str(intent_id))
            .where(PaymentIntent.status.not_in(TERMINAL_STATUSES))
            .where(
                or_(
                    PaymentIntent.lease_owner.is_(None),
                    PaymentIntent.lease_owner == owner,
                    PaymentIntent.lease_expires_at < now,
                )
            )
            .values(lease_owner=owner, lease_expires_at=now + timedelta(seconds=lease_seconds))
            .execution_options(synchronize_session=False)
        )
        with session_scope(self.SessionFactory) as s:
            return s.execute(stmt).rowcount == 1

    def release(self, intent_id: str, owner: str) -> None:
        stmt = (
            update(PaymentIntent)
            .where(PaymentIntent.intent_id == str(intent_id))
            .where(PaymentIntent.lease_owner == owner)
            .where(PaymentIntent.status.not_in(TERMINAL_STATUSES))
            .values(lease_owner=None, lease_expires_at=None)
            .execution_options(synchronize_session=False)
        )
        with session_scope(self.SessionFactory) as s:
            s.execute(stmt)
