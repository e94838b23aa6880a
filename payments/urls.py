from django.urls import path
from . import views

app_name = 'payments'

urlpatterns = [
    # оформление: создаёт pending-пожертвования и платёж у провайдера
    path('checkout/', views.checkout_start, name='checkout'),

    # вебхуки провайдеров: card -> ЮKassa, crypto -> NOWPayments
    path('webhook/<str:provider>/', views.webhook, name='webhook'),
]
