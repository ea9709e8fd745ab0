# settlement/balance_ledger.py

import logging
from decimal import Decimal
from typing import Optional

from sqlalchemy import update
from sqlalchemy.orm import Session, sessionmaker

from settlement.entities import Profile, Wallet
from settlement.errors import InputError, InsufficientFunds, WalletNotFound
from settlement.intent_repository import session_scope
from settlement.pricing import SOL, USDC

logger = logging.getLogger("settlement_ledger")

_BALANCE_COLUMNS = {
    USDC: Wallet.usdc_balance,
    SOL: Wallet.sol_balance,
}


def _balance_column(asset: str):
    column = _BALANCE_COLUMNS.get(asset)
    if column is None:
        raise InputError(f"Unsupported ledger asset: {asset}")
    return column


class BalanceLedger:
    """
    Custodial balances per family. A family's wallet is the wallet of its
    parent profile. Deductions are one conditional UPDATE so two intents of
    the same family cannot both spend the same balance.
    """

    def __init__(self, session_factory: sessionmaker):
        self.SessionFactory = session_factory

    def _parent_profile(self, session: Session, family_id: str) -> Optional[Profile]:
        return (
            session.query(Profile)
            .filter(Profile.family_id == str(family_id))
            .filter(Profile.role == "parent")
            .order_by(Profile.id)
            .first()
        )

    def find_family_wallet(self, family_id: str) -> Optional[Wallet]:
        session = self.SessionFactory()
        try:
            profile = self._parent_profile(session, family_id)
            if profile is None:
                logger.error("No parent profile for family %s", family_id)
                return None
            wallet = session.get(Wallet, profile.id)
            if wallet is None:
                logger.error("No wallet for parent user %s (family %s)", profile.id, family_id)
                return None
            session.expunge(wallet)
            return wallet
        finally:
            session.close()

    def get_wallet_address(self, family_id: str) -> str:
        session = self.SessionFactory()
        try:
            profile = self._parent_profile(session, family_id)
        finally:
            session.close()
        if profile is None or not profile.wallet_address:
            raise WalletNotFound("Parent wallet address not found")
        return profile.wallet_address

    def get_balance(self, family_id: str, asset: str) -> Decimal:
        column = _balance_column(asset)
        wallet = self.find_family_wallet(family_id)
        if wallet is None:
            raise WalletNotFound("Parent wallet not found")
        return Decimal(getattr(wallet, column.key) or 0)

    def deduct(
        self,
        wallet_id: str,
        asset: str,
        amount: Decimal,
        *,
        session: Optional[Session] = None,
    ) -> Decimal:
        """
        Atomically take `amount` of `asset` from the wallet if it is covered.
        Returns the new balance; raises InsufficientFunds / WalletNotFound.
        """
        column = _balance_column(asset)
        amount = Decimal(amount)
        if amount <= 0:
            raise InputError("Deduction amount must be greater than 0")

        stmt = (
            update(Wallet)
            .where(Wallet.user_id == str(wallet_id))
            .where(column >= amount)
            .values({column.key: column - amount})
            .execution_options(synchronize_session=False)
        )
        with session_scope(self.SessionFactory, session) as s:
            if s.execute(stmt).rowcount == 1:
                new_balance = Decimal(s.query(column).filter(Wallet.user_id == str(wallet_id)).scalar())
                logger.info("Deducted %s %s from wallet %s. New balance: %s",
                            f"{amount:.4f}", asset, wallet_id, f"{new_balance:.4f}")
                return new_balance

            current = s.query(column).filter(Wallet.user_id == str(wallet_id)).scalar()

        if current is None:
            raise WalletNotFound("Parent wallet not found")
        raise InsufficientFunds(
            f"Insufficient {asset} balance. Required: {amount:.4f}, Available: {Decimal(current):.4f}"
        )

    def credit(
        self,
        wallet_id: str,
        asset: str,
        amount: Decimal,
        *,
        create_missing: bool = False,
        session: Optional[Session] = None,
    ) -> None:
        column = _balance_column(asset)
        amount = Decimal(amount)
        if amount <= 0:
            raise InputError("Amount must be greater than 0")

        stmt = (
            update(Wallet)
            .where(Wallet.user_id == str(wallet_id))
            .values({column.key: column + amount})
            .execution_options(synchronize_session=False)
        )
        with session_scope(self.SessionFactory, session) as s:
            if s.execute(stmt).rowcount == 1:
                logger.info("Credited %s %s to wallet %s", f"{amount:.4f}", asset, wallet_id)
                return
            if not create_missing:
                raise WalletNotFound(f"Wallet not found: {wallet_id}")

            wallet = Wallet(user_id=str(wallet_id), usdc_balance=Decimal("0"), sol_balance=Decimal("0"))
            setattr(wallet, column.key, amount)
            s.add(wallet)
            logger.info("Created wallet %s with %s %s", wallet_id, f"{amount:.4f}", asset)
