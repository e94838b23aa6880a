from django.contrib import admin
from django.urls import path, include

urlpatterns = [
    path('admin/', admin.site.urls), #админка

    path('donations/', include('donations.urls', namespace='donations')), #отслеживание, возвраты, статусы
    path('payments/', include('payments.urls', namespace='payments')), #оформление и вебхуки
]
