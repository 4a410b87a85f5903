"""
Profile access for the trust engine.

ProfileAccessor is the read interface the engine needs from the account and
transaction owners. DatabaseProfileAccessor serves it from our own tables.
"""

from abc import ABC, abstractmethod
from typing import List, Optional, Set

from sqlalchemy import or_
from sqlalchemy.orm import Session

from trustshield.models.account import Account
from trustshield.models.transaction import Transaction
from trustshield.schemas.domain import AccountType, CompletedTrade, TransactionStatus
from trustshield.utils.clock import utcnow


class ProfileAccessor(ABC):
    """Read-only view of user profiles and trading history."""

    @abstractmethod
    def get_account_age_days(self, user_id: str) -> Optional[float]:
        ...

    @abstractmethod
    def get_account_type(self, user_id: str) -> AccountType:
        ...

    @abstractmethod
    def get_trading_partners(self, user_id: str) -> Set[str]:
        ...

    @abstractmethod
    def get_completed_trades(self, user_id: str) -> List[CompletedTrade]:
        ...

    @abstractmethod
    def has_identity_verified(self, user_id: str) -> bool:
        ...

    @abstractmethod
    def has_business_verified(self, user_id: str) -> bool:
        ...

    @abstractmethod
    def get_average_response_hours(self, user_id: str) -> Optional[float]:
        ...

    @abstractmethod
    def get_average_completion_hours(self, user_id: str) -> Optional[float]:
        ...

    @abstractmethod
    def has_disputes(self, user_id: str) -> bool:
        ...

    def shares_contact_info(self, user_a: str, user_b: str) -> bool:
        return False


class DatabaseProfileAccessor(ProfileAccessor):
    def __init__(self, db: Session):
        self.db = db

    def _account(self, user_id: str) -> Optional[Account]:
        return self.db.query(Account).filter(Account.user_id == user_id).first()

    def _transactions(self, user_id: str, *statuses: TransactionStatus) -> List[Transaction]:
        query = self.db.query(Transaction).filter(
            or_(Transaction.party_a == user_id, Transaction.party_b == user_id)
        )
        if statuses:
            query = query.filter(Transaction.status.in_([s.value for s in statuses]))
        return query.all()

    def get_account_age_days(self, user_id: str) -> Optional[float]:
        account = self._account(user_id)
        if account is None or account.created_at is None:
            return None
        return (utcnow() - account.created_at).total_seconds() / 86400.0

    def get_account_type(self, user_id: str) -> AccountType:
        account = self._account(user_id)
        if account is None:
            return AccountType.UNVERIFIED
        try:
            return AccountType(account.account_type)
        except ValueError:
            return AccountType.INDIVIDUAL

    def get_trading_partners(self, user_id: str) -> Set[str]:
        return {t.other_party(user_id) for t in self._transactions(user_id, TransactionStatus.DONE)}

    def get_completed_trades(self, user_id: str) -> List[CompletedTrade]:
        return [
            CompletedTrade(
                transaction_id=t.id,
                other_user_id=t.other_party(user_id),
                initiated_at=t.initiated_at,
                completed_at=t.completed_at,
            )
            for t in self._transactions(user_id, TransactionStatus.DONE)
        ]

    def has_identity_verified(self, user_id: str) -> bool:
        account = self._account(user_id)
        return bool(account and account.identity_verified)

    def has_business_verified(self, user_id: str) -> bool:
        account = self._account(user_id)
        if account is None:
            return False
        return bool(account.business_verified) or account.account_type == AccountType.BUSINESS_VERIFIED.value

    def get_average_response_hours(self, user_id: str) -> Optional[float]:
        account = self._account(user_id)
        return account.average_response_hours if account else None

    def get_average_completion_hours(self, user_id: str) -> Optional[float]:
        durations = [
            (t.completed_at - t.initiated_at).total_seconds() / 3600.0
            for t in self._transactions(user_id, TransactionStatus.DONE)
            if t.completed_at and t.initiated_at
        ]
        if not durations:
            return None
        return sum(durations) / len(durations)

    def has_disputes(self, user_id: str) -> bool:
        return bool(self._transactions(user_id, TransactionStatus.DISPUTED))

    def shares_contact_info(self, user_a: str, user_b: str) -> bool:
        a = self._account(user_a)
        b = self._account(user_b)
        if a is None or b is None or not a.contact_hash or not b.contact_hash:
            return False
        return a.contact_hash == b.contact_hash
