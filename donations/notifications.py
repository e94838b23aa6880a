# donations/notifications.py
import logging
from decimal import Decimal

from django.conf import settings
from django.core.mail import EmailMessage
from django.dispatch import receiver
from django.template.loader import render_to_string

from .signals import donation_completed, payment_confirmed, refund_completed

logger = logging.getLogger('mail')

SUBJECTS = {
    'payment_confirmed': "{site}: спасибо за пожертвование, заказ {ref}",
    'donation_completed': "{site}: помощь доставлена, заказ {ref}",
    'refund_completed': "{site}: возврат средств по заказу {ref}",
}


def send_donor_email(kind: str, order_reference: str, donations) -> None:
    """
    Отправляет донору текстовое письмо по событию заказа.
    Ошибки логируются и не пробрасываются наружу.
    """
    donations = list(donations)
    if not donations:
        return
    email = donations[0].donor_email
    if not email:
        logger.warning("%s: order %s has no donor email", kind, order_reference)
        return

    ctx = {
        'order_reference': order_reference,
        'donations': donations,
        'donor_name': donations[0].donor_name,
        'total': sum((d.amount for d in donations), Decimal('0.00')),
        'currency': donations[0].currency,
        'site_name': settings.SITE_NAME,
        'site_url': settings.SITE_URL,
    }
    subject = SUBJECTS[kind].format(site=settings.SITE_NAME, ref=order_reference)
    body = render_to_string(f'email/{kind}.txt', ctx)

    msg = EmailMessage(
        subject=subject,
        body=body,
        from_email=settings.DEFAULT_FROM_EMAIL,
        to=[email],
    )
    try:
        sent_count = msg.send(fail_silently=False)
        logger.info("%s email sent: order=%s result=%s", kind, order_reference, sent_count)
    except Exception as e:
        # письмо не должно влиять на статус пожертвования
        logger.exception("%s email FAILED: order=%s: %s", kind, order_reference, e)


@receiver(payment_confirmed, dispatch_uid='donations_payment_confirmed_mail')
def on_payment_confirmed(sender, order_reference, donations, **kwargs):
    send_donor_email('payment_confirmed', order_reference, donations)


@receiver(donation_completed, dispatch_uid='donations_completed_mail')
def on_donation_completed(sender, order_reference, donations, **kwargs):
    send_donor_email('donation_completed', order_reference, donations)


@receiver(refund_completed, dispatch_uid='donations_refund_completed_mail')
def on_refund_completed(sender, order_reference, donations, **kwargs):
    send_donor_email('refund_completed', order_reference, donations)
