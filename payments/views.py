import json
import logging

from django.http import HttpResponse, HttpResponseBadRequest, JsonResponse
from django.views.decorators.csrf import csrf_exempt
from django.views.decorators.http import require_POST

from donations.forms import CheckoutForm
from .providers.base import (
    API_ERROR, CallbackNotReadyError, InvalidCallbackError, ProviderError, get_provider, provider_names,
)
from .services import reconcile_callback, start_checkout

logger = logging.getLogger('payments')


@csrf_exempt
@require_POST
def checkout_start(request):
    """
    Оформляет пожертвование и создаёт платёж у провайдера.
    Для карты в ответе ссылка на оплату, для криптовалюты - адрес и сумма перевода.
    """
    try:
        body = json.loads(request.body.decode('utf-8') or '{}')
    except (UnicodeDecodeError, json.JSONDecodeError):
        return JsonResponse({"error": "Неверный JSON"}, status=400)
    if not isinstance(body, dict):
        return JsonResponse({"error": "Неверный JSON"}, status=400)

    form = CheckoutForm(body)
    if not form.is_valid():
        return JsonResponse({'error': 'invalid_request', 'fields': form.errors.get_json_data()}, status=400)

    data = form.cleaned_data
    result = start_checkout(
        data['lines'],
        donor_email=data['donor_email'],
        donor_name=data['donor_name'],
        donor_message=data['donor_message'],
        tip_amount=data['tip_amount'],
        payment_method=data['payment_method'],
        pay_currency=data['pay_currency'] or None,
    )
    if result.success:
        return JsonResponse(result.as_dict(), status=201)
    return JsonResponse(result.as_dict(), status=502 if result.error == API_ERROR else 400)


@csrf_exempt
def webhook(request, provider):
    """
    Вебхук платёжного провайдера.
    400 - подпись/тело не прошли проверку; 503 и 502 - провайдер повторит доставку.
    """
    if request.method != 'POST':
        return HttpResponseBadRequest('POST only')
    if provider not in provider_names():
        return HttpResponse('Unknown provider', status=404)

    adapter = get_provider(provider)
    try:
        result = reconcile_callback(provider, request.body, request.headers)
    except InvalidCallbackError as e:
        logger.warning("Webhook rejected: provider=%s: %s", provider, e)
        return HttpResponseBadRequest('Invalid callback')
    except CallbackNotReadyError:
        return HttpResponse('Order not ready', status=503)
    except ProviderError as e:
        logger.error("Webhook verification failed at provider: provider=%s: %s", provider, e)
        return HttpResponse('Provider error', status=502)

    return HttpResponse(adapter.acknowledge(result.outcome), content_type=adapter.ack_content_type)
