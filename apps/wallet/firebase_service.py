"""
Firebase Service for Wallets
Handles the users wallet balance and the transactions collection.
"""

from firebase_admin import firestore
from datetime import date, datetime
from enum import Enum
from typing import Callable, Dict, List, Optional
import logging

from django.utils import timezone

logger = logging.getLogger(__name__)

USERS_COLLECTION = 'users'
TRANSACTIONS_COLLECTION = 'transactions'


class DebitResult(str, Enum):
    APPLIED = 'applied'
    DUPLICATE = 'duplicate'
    INSUFFICIENT = 'insufficient'
    USER_MISSING = 'user_missing'


@firestore.transactional
def _debit_in_transaction(transaction, user_ref, tx_ref, amount, floor, record) -> DebitResult:
    """
    Read-check-write of one debit. The transaction record id is the charge id,
    so a debit that already landed is reported as a duplicate and not applied
    again. All reads happen before the writes.
    """
    if tx_ref.get(transaction=transaction).exists:
        return DebitResult.DUPLICATE

    user_snapshot = user_ref.get(transaction=transaction)
    if not user_snapshot.exists:
        return DebitResult.USER_MISSING

    balance = (user_snapshot.to_dict() or {}).get('walletBalance') or 0
    if balance - amount < floor:
        return DebitResult.INSUFFICIENT

    transaction.update(user_ref, {'walletBalance': balance - amount})
    transaction.set(tx_ref, {**record, 'timestamp': firestore.SERVER_TIMESTAMP})
    return DebitResult.APPLIED


def section_title(day: date, today: date) -> str:
    """'Today', 'Yesterday' or 'Month d, yyyy'."""
    delta = (today - day).days
    if delta == 0:
        return 'Today'
    if delta == 1:
        return 'Yesterday'
    return f"{day:%B} {day.day}, {day.year}"


def group_transactions_by_date(transactions: List[Dict], today: Optional[date] = None) -> List[Dict]:
    """
    Group transactions (newest first) into dated sections.
    Transactions whose server timestamp has not landed yet are skipped.

    Returns:
        [{'title': 'Today', 'data': [...]}, ...] in input order
    """
    today = today or timezone.localdate()
    sections: Dict[str, List[Dict]] = {}

    for transaction in transactions:
        stamp = transaction.get('timestamp')
        if not isinstance(stamp, datetime):
            continue
        local_day = timezone.localtime(stamp).date() if timezone.is_aware(stamp) else stamp.date()
        sections.setdefault(section_title(local_day, today), []).append(transaction)

    return [{'title': title, 'data': data} for title, data in sections.items()]


class WalletFirebaseService:
    """Service class for Firebase wallet operations"""

    def __init__(self, db=None):
        self.db = db or firestore.client()
        self.users = self.db.collection(USERS_COLLECTION)
        self.transactions = self.db.collection(TRANSACTIONS_COLLECTION)

    def get_user(self, user_id: str) -> Optional[Dict]:
        """
        Get a user document from Firebase

        Args:
            user_id: Firebase UID

        Returns:
            Dictionary with user data or None if not found
        """
        try:
            doc = self.users.document(user_id).get()
            if doc.exists:
                data = doc.to_dict() or {}
                data['firebase_id'] = doc.id
                return data
            return None
        except Exception as e:
            logger.error(f"Error fetching user {user_id}: {e}", exc_info=True)
            return None

    def get_balance(self, user_id: str) -> Optional[float]:
        user = self.get_user(user_id)
        if user is None:
            return None
        return user.get('walletBalance') or 0

    def debit(
        self,
        user_id: str,
        amount: int,
        charge_id: str,
        record: Dict,
        floor: int,
    ) -> DebitResult:
        """
        Atomically debit the wallet and write the debit record.

        Args:
            user_id: Firebase UID
            amount: Whole currency units to deduct
            charge_id: Idempotency key, used as the transaction document ID
            record: Extra fields for the transaction document (zoneName, distance, ...)
            floor: Minimum balance that must remain after the debit

        Returns:
            DebitResult

        Raises:
            google.api_core.exceptions.GoogleAPIError: when Firestore is unreachable
        """
        user_ref = self.users.document(user_id)
        tx_ref = self.transactions.document(charge_id)
        data = {
            **record,
            'userId': user_id,
            'amount': amount,
            'type': 'debit',
            'chargeId': charge_id,
        }

        result = _debit_in_transaction(self.db.transaction(), user_ref, tx_ref, amount, floor, data)

        if result == DebitResult.APPLIED:
            logger.info(f"Debited {amount} from {user_id} ({charge_id})")
        elif result == DebitResult.DUPLICATE:
            logger.info(f"Charge {charge_id} already applied, skipping")
        elif result == DebitResult.INSUFFICIENT:
            logger.info(f"Debit of {amount} refused for {user_id}: balance would drop below {floor}")
        else:
            logger.error(f"User {user_id} not found, cannot debit {amount}")
        return result

    def credit(self, user_id: str, amount: int, description: str = 'Wallet Top-up') -> str:
        """
        Add funds to the wallet and record the credit.

        Returns:
            Transaction document ID

        Raises:
            google.api_core.exceptions.GoogleAPIError: when Firestore is unreachable
        """
        self.users.document(user_id).update({'walletBalance': firestore.Increment(amount)})
        _, tx_ref = self.transactions.add({
            'userId': user_id,
            'amount': amount,
            'type': 'credit',
            'description': description,
            'timestamp': firestore.SERVER_TIMESTAMP,
        })
        logger.info(f"Credited {amount} to {user_id}")
        return tx_ref.id

    def update_gps_status(self, user_id: str, status: str) -> bool:
        """
        Write users/{uid}.gpsStatusInZone

        Returns:
            True if successful, False otherwise
        """
        try:
            self.users.document(user_id).update({'gpsStatusInZone': status})
            logger.info(f"gpsStatusInZone of {user_id} set to {status}")
            return True
        except Exception as e:
            logger.error(f"Error updating gpsStatusInZone for {user_id}: {e}", exc_info=True)
            return False

    def list_transactions(
        self,
        user_id: str,
        limit: Optional[int] = 5,
        transaction_type: Optional[str] = None,
    ) -> List[Dict]:
        """
        List a user's transactions, newest first

        Args:
            user_id: Firebase UID
            limit: Maximum number of transactions (None for all)
            transaction_type: 'debit' or 'credit' to filter

        Returns:
            List of transaction dictionaries
        """
        try:
            query = self.transactions.where('userId', '==', user_id)
            if transaction_type:
                query = query.where('type', '==', transaction_type)
            query = query.order_by('timestamp', direction=firestore.Query.DESCENDING)
            if limit:
                query = query.limit(limit)

            transactions = []
            for doc in query.stream():
                data = doc.to_dict() or {}
                data['firebase_id'] = doc.id
                transactions.append(data)
            return transactions
        except Exception as e:
            logger.error(f"Error listing transactions for {user_id}: {e}", exc_info=True)
            return []

    def history_sections(self, user_id: str, today: Optional[date] = None) -> List[Dict]:
        """Toll deductions grouped into Today / Yesterday / dated sections."""
        debits = self.list_transactions(user_id, limit=None, transaction_type='debit')
        return group_transactions_by_date(debits, today)

    def watch_user(self, user_id: str, callback: Callable[[Dict], None]):
        """
        Subscribe to the user document.

        Args:
            callback: Called with the user data on every change

        Returns:
            The Firestore watch (call unsubscribe() to stop)
        """
        def on_snapshot(doc_snapshot, changes, read_time):
            for doc in doc_snapshot:
                if not doc.exists:
                    continue
                try:
                    callback(doc.to_dict() or {})
                except Exception as e:
                    logger.error(f"Error handling update of user {user_id}: {e}", exc_info=True)

        return self.users.document(user_id).on_snapshot(on_snapshot)
