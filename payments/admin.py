from django.contrib import admin
from .models import PaymentTransaction, ProcessedCallback


@admin.register(PaymentTransaction)
class PaymentTransactionAdmin(admin.ModelAdmin):
    list_display = ('payment_id', 'provider', 'kind', 'status', 'order_reference', 'amount', 'currency', 'created_at')
    search_fields = ('payment_id', 'order_reference')
    list_filter = ('status', 'provider', 'kind', 'created_at')
    readonly_fields = ('payload', 'created_at', 'updated_at')


@admin.register(ProcessedCallback)
class ProcessedCallbackAdmin(admin.ModelAdmin):
    list_display = ('idempotency_key', 'provider', 'kind', 'order_reference', 'provider_status',
                    'outcome_status', 'applied_count', 'created_at')
    search_fields = ('idempotency_key', 'order_reference')
    list_filter = ('provider', 'kind', 'outcome_status')
