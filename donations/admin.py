# donations/admin.py
from django import forms
from django.contrib import admin, messages

from . import status
from .exceptions import IllegalTransitionError
from .models import DeliveryProof, Donation, StatusHistory
from .proofs import get_proof_store


def _batch(modeladmin, request, queryset, target, done_message):
    ids = list(queryset.values_list('pk', flat=True))
    try:
        updated = status.transition_batch(ids, target, StatusHistory.Actor.STAFF,
                                          actor_identity=request.user.get_username(),
                                          note="admin action")
    except IllegalTransitionError as e:
        modeladmin.message_user(request, str(e), level=messages.ERROR)
        return
    modeladmin.message_user(request, f"{done_message}: {len(updated)}")


# --- actions ---
@admin.action(description="Подтвердить получение оплаты")
def confirm_donations(modeladmin, request, queryset):
    _batch(modeladmin, request, queryset, Donation.Status.CONFIRMED, "Подтверждено")


@admin.action(description="Начать доставку")
def start_delivery(modeladmin, request, queryset):
    _batch(modeladmin, request, queryset, Donation.Status.DELIVERING, "Передано в доставку")


@admin.action(description="Отметить возврат выполненным")
def complete_refunds(modeladmin, request, queryset):
    # криптовозвраты делаются вручную, после перевода отмечаем здесь
    _batch(modeladmin, request, queryset, Donation.Status.REFUNDED, "Возврат отмечен")


# --- inline ---
class StatusHistoryInline(admin.TabularInline):
    model = StatusHistory
    extra = 0
    can_delete = False
    fields = ('created_at', 'from_status', 'to_status', 'actor', 'actor_identity', 'note')
    readonly_fields = fields

    def has_add_permission(self, request, obj=None):
        return False


class DeliveryProofForm(forms.ModelForm):
    class Meta:
        model = DeliveryProof
        fields = ('file_path', 'content_type')

    def clean_file_path(self):
        file_path = self.cleaned_data['file_path'].strip()
        try:
            get_proof_store().validate_path(self.instance.donation, file_path)
        except ValueError as e:
            raise forms.ValidationError(str(e))
        return file_path


class DeliveryProofInline(admin.TabularInline):
    model = DeliveryProof
    form = DeliveryProofForm
    extra = 0
    can_delete = False
    fields = ('file_path', 'content_type', 'uploaded_by', 'created_at')
    readonly_fields = ('uploaded_by', 'created_at')

    # добавить можно, править уже загруженное нельзя
    def has_change_permission(self, request, obj=None):
        return False


@admin.register(Donation)
class DonationAdmin(admin.ModelAdmin):
    list_display = ('donation_public_id', 'order_reference', 'project', 'quantity', 'amount',
                    'payment_method', 'donation_status', 'donor_email', 'donated_at')
    list_filter = ('donation_status', 'payment_method', 'is_tip', 'project')
    search_fields = ('donation_public_id', 'order_reference', 'donor_email', 'donor_name')
    inlines = [DeliveryProofInline, StatusHistoryInline]

    # статус меняется только через действия, чтобы счётчики проекта не разошлись
    readonly_fields = ('donation_public_id', 'order_reference', 'project', 'quantity', 'amount',
                       'currency', 'is_tip', 'payment_method', 'donation_status', 'donated_at', 'updated_at')

    fieldsets = (
        (None, {
            "fields": ("donation_public_id", "order_reference", "project", "quantity", "amount",
                       "currency", "is_tip")
        }),
        ("Донор", {
            "fields": ("donor_name", "donor_email", "donor_message"),
        }),
        ("Статус", {
            "fields": ("payment_method", "donation_status", "donated_at", "updated_at"),
        }),
    )

    actions = [confirm_donations, start_delivery, complete_refunds]

    def has_add_permission(self, request):
        return False

    def save_formset(self, request, form, formset, change):
        if formset.model is not DeliveryProof:
            return super().save_formset(request, form, formset, change)
        # новые подтверждения создаёт хранилище, с его проверкой пути
        store = get_proof_store()
        for proof in formset.save(commit=False):
            if proof.pk:
                continue
            store.attach(form.instance, proof.file_path,
                         content_type=proof.content_type,
                         uploaded_by=request.user.get_username())


@admin.register(StatusHistory)
class StatusHistoryAdmin(admin.ModelAdmin):
    list_display = ('donation', 'from_status', 'to_status', 'actor', 'actor_identity', 'created_at')
    list_filter = ('actor', 'to_status')
    search_fields = ('donation__donation_public_id', 'actor_identity')
    readonly_fields = ('donation', 'from_status', 'to_status', 'actor', 'actor_identity', 'note', 'created_at')

    # журнал только дописывается
    def has_add_permission(self, request):
        return False

    def has_change_permission(self, request, obj=None):
        return False

    def has_delete_permission(self, request, obj=None):
        return False
