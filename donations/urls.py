from django.urls import path
from . import views

app_name = 'donations'

urlpatterns = [
    # донор: отслеживание и запрос возврата
    path('track/', views.track, name='track'),
    path('refund/', views.request_refund, name='refund'),
    path('order/<str:order_reference>/', views.order_summary, name='order_summary'),

    # сотрудники
    path('staff/batch-status/', views.batch_update_status, name='batch_status'),
    path('staff/<str:public_id>/', views.staff_donation, name='staff_donation'),
    path('staff/<str:public_id>/status/', views.update_status, name='update_status'),
    path('staff/<str:public_id>/proofs/', views.attach_proof, name='attach_proof'),
]
