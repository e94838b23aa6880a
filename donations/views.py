import json
import logging

from django.contrib.auth.decorators import login_required
from django.http import JsonResponse
from django.views.decorators.csrf import csrf_exempt
from django.views.decorators.http import require_GET, require_POST

from . import status
from .exceptions import DeliveryProofRequiredError, IllegalTransitionError
from .forms import BatchStatusForm, ProofForm, RefundRequestForm, StatusUpdateForm, TrackForm
from .models import Donation, StatusHistory
from .proofs import get_proof_store
from .refunds import initiate_refund
from .services import lookup_donations

logger = logging.getLogger('donations')

NOT_FOUND_MESSAGE = "Пожертвование не найдено. Проверьте email и номер."


def _json_body(request):
    try:
        body = json.loads(request.body.decode('utf-8') or '{}')
    except (UnicodeDecodeError, json.JSONDecodeError):
        return None
    return body if isinstance(body, dict) else None


def _form_errors(form):
    return JsonResponse({'error': 'invalid_request', 'fields': form.errors.get_json_data()}, status=400)


def _transition_error(e):
    http_status = 409 if isinstance(e, IllegalTransitionError) else 400
    return JsonResponse({'error': e.code, 'message': str(e)}, status=http_status)


def serialize_donation(d: Donation, *, with_history=False, proof_store=None) -> dict:
    data = {
        'donation_id': d.donation_public_id,
        'order_reference': d.order_reference,
        'project': {'id': d.project_id, 'name': d.project.name, 'location': d.project.location},
        'quantity': d.quantity,
        'amount': str(d.amount),
        'currency': d.currency,
        'is_tip': d.is_tip,
        'payment_method': d.payment_method,
        'status': d.donation_status,
        'status_display': d.get_donation_status_display(),
        'donated_at': d.donated_at.isoformat(),
        'updated_at': d.updated_at.isoformat(),
    }
    if with_history:
        data['history'] = [
            {'from': h.from_status, 'to': h.to_status, 'actor': h.actor, 'at': h.created_at.isoformat()}
            for h in d.history.all()
        ]
    if proof_store is not None and d.donation_status in (Donation.Status.DELIVERING, Donation.Status.COMPLETED):
        data['proofs'] = proof_store.list_proof_files(d)
    return data


@csrf_exempt
@require_POST
def track(request):
    """Донор смотрит свои пожертвования по email и номеру пожертвования или заказа."""
    body = _json_body(request)
    if body is None:
        return JsonResponse({"error": "Неверный JSON"}, status=400)
    form = TrackForm(body)
    if not form.is_valid():
        return _form_errors(form)

    donations = lookup_donations(form.cleaned_data['email'], form.cleaned_data['donation_id'])
    if not donations:
        # одинаковый ответ для чужого email и несуществующего номера
        return JsonResponse({'error': 'donation_not_found', 'message': NOT_FOUND_MESSAGE}, status=404)

    store = get_proof_store()
    return JsonResponse({
        'donations': [serialize_donation(d, with_history=True, proof_store=store) for d in donations],
    })


@require_GET
def order_summary(request, order_reference):
    """Краткая сводка заказа для страницы после оплаты, без данных донора."""
    donations = list(Donation.objects.for_order(order_reference).select_related('project'))
    if not donations:
        return JsonResponse({'error': 'donation_not_found'}, status=404)
    return JsonResponse({
        'order_reference': order_reference,
        'donations': [
            {
                'donation_id': d.donation_public_id,
                'project': d.project.name,
                'quantity': d.quantity,
                'amount': str(d.amount),
                'currency': d.currency,
                'status': d.donation_status,
            }
            for d in donations
        ],
    })


@csrf_exempt
@require_POST
def request_refund(request):
    body = _json_body(request)
    if body is None:
        return JsonResponse({"error": "Неверный JSON"}, status=400)
    form = RefundRequestForm(body)
    if not form.is_valid():
        return _form_errors(form)

    result = initiate_refund(form.cleaned_data['reference'], form.cleaned_data['email'])
    if result.success:
        return JsonResponse(result.as_dict())
    http_status = {'donation_not_found': 404, 'api_error': 502}.get(result.error, 400)
    return JsonResponse(result.as_dict(), status=http_status)


# --- для сотрудников ---

def _staff_only(request):
    user = request.user
    if not (user.is_staff or user.is_superuser):
        return JsonResponse({"error": "Недостаточно прав"}, status=403)
    return None


@login_required
@require_GET
def staff_donation(request, public_id):
    denied = _staff_only(request)
    if denied:
        return denied
    d = Donation.objects.select_related('project').filter(donation_public_id=public_id).first()
    if d is None:
        return JsonResponse({'error': 'donation_not_found'}, status=404)
    data = serialize_donation(d, with_history=True, proof_store=get_proof_store())
    data['next_statuses'] = status.next_statuses_for(d.donation_status, StatusHistory.Actor.STAFF)
    data['donor'] = {'name': d.donor_name, 'email': d.donor_email, 'message': d.donor_message}
    return JsonResponse(data)


@login_required
@require_POST
def update_status(request, public_id):
    denied = _staff_only(request)
    if denied:
        return denied
    body = _json_body(request)
    if body is None:
        return JsonResponse({"error": "Неверный JSON"}, status=400)
    form = StatusUpdateForm(body)
    if not form.is_valid():
        return _form_errors(form)

    d = Donation.objects.filter(donation_public_id=public_id).first()
    if d is None:
        return JsonResponse({'error': 'donation_not_found'}, status=404)

    try:
        d = status.transition(d, form.cleaned_data['status'], StatusHistory.Actor.STAFF,
                              actor_identity=request.user.get_username(),
                              note=form.cleaned_data['note'])
    except (IllegalTransitionError, DeliveryProofRequiredError) as e:
        return _transition_error(e)
    return JsonResponse({'donation_id': d.donation_public_id, 'status': d.donation_status})


@login_required
@require_POST
def batch_update_status(request):
    denied = _staff_only(request)
    if denied:
        return denied
    body = _json_body(request)
    if body is None:
        return JsonResponse({"error": "Неверный JSON"}, status=400)
    form = BatchStatusForm(body)
    if not form.is_valid():
        return _form_errors(form)

    public_ids = form.cleaned_data['donation_ids']
    pks = list(Donation.objects.filter(donation_public_id__in=public_ids).values_list('pk', flat=True))
    if len(pks) != len(set(public_ids)):
        return JsonResponse({'error': 'donation_not_found'}, status=404)

    try:
        updated = status.transition_batch(pks, form.cleaned_data['status'], StatusHistory.Actor.STAFF,
                                          actor_identity=request.user.get_username(),
                                          note=form.cleaned_data['note'])
    except IllegalTransitionError as e:
        return _transition_error(e)
    return JsonResponse({
        'updated': [d.donation_public_id for d in updated],
        'status': form.cleaned_data['status'],
    })


@login_required
@require_POST
def attach_proof(request, public_id):
    denied = _staff_only(request)
    if denied:
        return denied
    body = _json_body(request)
    if body is None:
        return JsonResponse({"error": "Неверный JSON"}, status=400)
    form = ProofForm(body)
    if not form.is_valid():
        return _form_errors(form)

    d = Donation.objects.filter(donation_public_id=public_id).first()
    if d is None:
        return JsonResponse({'error': 'donation_not_found'}, status=404)

    store = get_proof_store()
    try:
        store.attach(d, form.cleaned_data['file_path'],
                     content_type=form.cleaned_data['content_type'],
                     uploaded_by=request.user.get_username())
    except ValueError as e:
        return JsonResponse({'error': 'invalid_proof', 'message': str(e)}, status=400)
    logger.info("Delivery proof attached: donation=%s path=%s", d.donation_public_id, form.cleaned_data['file_path'])
    return JsonResponse({'donation_id': d.donation_public_id, 'proofs': store.list_proof_files(d)}, status=201)
