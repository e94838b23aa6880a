# projects/admin.py
from django.contrib import admin

from .models import Project


@admin.action(description="Открыть сбор")
def activate_projects(modeladmin, request, queryset):
    updated = queryset.exclude(status=Project.Status.ACTIVE).update(status=Project.Status.ACTIVE)
    modeladmin.message_user(request, f"Открыто проектов: {updated}")


@admin.action(description="Приостановить сбор")
def pause_projects(modeladmin, request, queryset):
    updated = queryset.filter(status=Project.Status.ACTIVE).update(status=Project.Status.PAUSED)
    modeladmin.message_user(request, f"Приостановлено: {updated}")


@admin.action(description="Завершить проект")
def complete_projects(modeladmin, request, queryset):
    updated = queryset.exclude(status=Project.Status.COMPLETED).update(status=Project.Status.COMPLETED)
    modeladmin.message_user(request, f"Завершено: {updated}")


@admin.register(Project)
class ProjectAdmin(admin.ModelAdmin):
    list_display = ('name', 'status', 'aggregate_donations', 'is_long_term',
                    'current_units', 'target_units', 'current_amount', 'target_amount')
    list_filter = ('status', 'aggregate_donations', 'is_long_term')
    search_fields = ('name', 'location')
    prepopulated_fields = {'slug': ('name',)}

    # счётчики меняет только журнал ёмкости
    readonly_fields = ('current_units', 'current_amount', 'reserved_units', 'reserved_amount',
                       'created_at', 'updated_at')

    fieldsets = (
        (None, {
            "fields": ("name", "slug", "location", "status"),
        }),
        ("Сбор", {
            "fields": ("aggregate_donations", "is_long_term", "unit_name", "unit_price",
                       "target_units", "target_amount"),
        }),
        ("Счётчики", {
            "fields": ("current_units", "current_amount", "reserved_units", "reserved_amount",
                       "created_at", "updated_at"),
        }),
    )

    actions = [activate_projects, pause_projects, complete_projects]
