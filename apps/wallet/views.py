"""
Wallet API Views - local JSON endpoints of the vehicle unit
"""

import json
import logging

from django.conf import settings
from django.http import JsonResponse
from django.views.decorators.csrf import csrf_exempt
from django.views.decorators.http import require_http_methods
from google.api_core.exceptions import GoogleAPIError

from apps.trips.connectivity import ConnectivityMonitor
from apps.trips.firebase_service import TripFirebaseService
from config.tolling import TollingConfig
from .firebase_service import WalletFirebaseService
from .ledger import TollLedger
from .models import OfflineTransaction, PendingDeduction
from .notifications import UserNotifier

logger = logging.getLogger(__name__)


def _user_id(request):
    return request.GET.get('user_id') or settings.VEHICLE_USER_ID


@require_http_methods(["GET"])
def wallet_summary(request):
    """
    Balance, last five transactions and locally deferred charges
    """
    user_id = _user_id(request)
    if not user_id:
        return JsonResponse({'success': False, 'error': 'No user configured'}, status=400)

    try:
        wallet_service = WalletFirebaseService()
        user = wallet_service.get_user(user_id)
        if user is None:
            return JsonResponse({'success': False, 'error': f'User {user_id} not found'}, status=404)

        pending = PendingDeduction.objects.filter(user_id=user_id).first()

        return JsonResponse({
            'success': True,
            'user_id': user_id,
            'name': user.get('name', ''),
            'balance': user.get('walletBalance') or 0,
            'gps_status': user.get('gpsStatusInZone', ''),
            'transactions': wallet_service.list_transactions(user_id, limit=5),
            'pending_deduction': float(pending.amount) if pending else None,
            'offline_queue': OfflineTransaction.objects.filter(user_id=user_id).count(),
        })

    except Exception as e:
        logger.error(f"Error building wallet summary for {user_id}: {e}", exc_info=True)
        return JsonResponse({'success': False, 'error': str(e)}, status=500)


@csrf_exempt
@require_http_methods(["POST"])
def top_up(request):
    """
    Add funds: {"amount": 500}. Retries the pending deduction afterwards.
    """
    user_id = _user_id(request)
    if not user_id:
        return JsonResponse({'success': False, 'error': 'No user configured'}, status=400)

    try:
        payload = json.loads(request.body or b'{}')
        amount = int(payload.get('amount'))
    except (ValueError, TypeError, AttributeError):
        return JsonResponse({'success': False, 'error': 'A whole, positive amount is required'}, status=400)

    if amount <= 0:
        return JsonResponse({'success': False, 'error': 'A whole, positive amount is required'}, status=400)

    config = TollingConfig.from_settings()
    wallet_service = WalletFirebaseService()
    user = wallet_service.get_user(user_id) or {}
    ledger = TollLedger(
        user_id,
        wallet_service,
        ConnectivityMonitor(),
        notifier=UserNotifier(email=user.get('email'), email_alerts=config.email_alerts),
        floor=config.wallet_floor,
        trip_store=TripFirebaseService(wallet_service.db),
    )

    try:
        outcome = ledger.top_up(amount)
    except GoogleAPIError as e:
        logger.error(f"Top-up of {amount} for {user_id} failed: {e}")
        return JsonResponse({'success': False, 'error': 'Wallet is unreachable, try again'}, status=503)

    return JsonResponse({
        'success': True,
        'message': f'₹{amount} has been added to your wallet.',
        'pending_deduction': outcome.value if outcome else None,
    })


@require_http_methods(["GET"])
def history(request):
    """
    Toll deductions grouped into Today / Yesterday / dated sections
    """
    user_id = _user_id(request)
    if not user_id:
        return JsonResponse({'success': False, 'error': 'No user configured'}, status=400)

    try:
        wallet_service = WalletFirebaseService()
        return JsonResponse({
            'success': True,
            'balance': wallet_service.get_balance(user_id),
            'sections': wallet_service.history_sections(user_id),
        })
    except Exception as e:
        logger.error(f"Error building history for {user_id}: {e}", exc_info=True)
        return JsonResponse({'success': False, 'error': str(e)}, status=500)
