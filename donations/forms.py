from decimal import Decimal, InvalidOperation

from django import forms
from django.conf import settings

from .models import Donation
from .services import OrderLine


class CheckoutForm(forms.Form):
    # [{"project_id": 1, "quantity": 2}, {"project_id": 5, "amount": "25.00"}]
    lines = forms.JSONField(label="Строки заказа")
    donor_email = forms.EmailField(label="Email")
    donor_name = forms.CharField(label="Имя", max_length=255, required=False)
    donor_message = forms.CharField(label="Сообщение", max_length=1000, required=False)
    tip_amount = forms.DecimalField(label="Чаевые", max_digits=12, decimal_places=2,
                                    min_value=Decimal('0'), required=False)
    payment_method = forms.ChoiceField(label="Способ оплаты", choices=Donation.PaymentMethod.choices)
    pay_currency = forms.CharField(label="Криптовалюта", max_length=20, required=False)

    def clean_lines(self):
        raw = self.cleaned_data['lines']
        if not isinstance(raw, list) or not raw:
            raise forms.ValidationError("Добавьте хотя бы один проект.")

        lines = []
        for item in raw:
            if not isinstance(item, dict):
                raise forms.ValidationError("Неверный формат строки заказа.")
            try:
                project_id = int(item['project_id'])
                quantity = int(item.get('quantity') or 1)
                amount = item.get('amount')
                amount = Decimal(str(amount)) if amount not in (None, '') else None
            except (KeyError, TypeError, ValueError, InvalidOperation):
                raise forms.ValidationError("Неверный формат строки заказа.")
            if quantity < 1:
                raise forms.ValidationError("Количество должно быть не меньше 1.")
            if amount is not None and amount <= 0:
                raise forms.ValidationError("Сумма должна быть больше нуля.")
            lines.append(OrderLine(project_id=project_id, quantity=quantity, amount=amount))
        return lines

    def clean_donor_name(self):
        return self.cleaned_data['donor_name'].strip()

    def clean(self):
        cleaned = super().clean()
        if cleaned.get('payment_method') == Donation.PaymentMethod.CRYPTO and not cleaned.get('pay_currency'):
            self.add_error('pay_currency', "Выберите криптовалюту.")
        tip = cleaned.get('tip_amount')
        if tip and settings.DONATIONS_TIP_PROJECT_ID is None:
            self.add_error('tip_amount', "Чаевые сейчас не принимаются.")
        return cleaned


class TrackForm(forms.Form):
    email = forms.EmailField(label="Email")
    donation_id = forms.CharField(label="Номер пожертвования или заказа", max_length=64)

    def clean_donation_id(self):
        return self.cleaned_data['donation_id'].strip()


class RefundRequestForm(forms.Form):
    email = forms.EmailField(label="Email")
    reference = forms.CharField(label="Номер заказа или пожертвования", max_length=64)

    def clean_reference(self):
        return self.cleaned_data['reference'].strip()


class StatusUpdateForm(forms.Form):
    status = forms.ChoiceField(label="Новый статус", choices=Donation.Status.choices)
    note = forms.CharField(label="Комментарий", max_length=255, required=False)


class BatchStatusForm(StatusUpdateForm):
    donation_ids = forms.JSONField(label="Пожертвования")

    def clean_donation_ids(self):
        raw = self.cleaned_data['donation_ids']
        if not isinstance(raw, list) or not raw:
            raise forms.ValidationError("Не выбрано ни одного пожертвования.")
        return [str(x).strip() for x in raw]


class ProofForm(forms.Form):
    file_path = forms.CharField(label="Путь к файлу", max_length=500)
    content_type = forms.CharField(label="Тип файла", max_length=100, required=False)
