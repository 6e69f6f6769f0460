from django.urls import path

from requisitions.views import (
    requisition_analytics,
    requisition_auto_split,
    requisition_collection,
    requisition_decision,
    requisition_export_csv,
    requisition_get,
    requisition_history,
    requisition_split,
    requisition_split_items,
    requisition_splits,
)

urlpatterns = [
    path("", requisition_collection, name="requisition_collection"),
    path("analytics", requisition_analytics, name="requisition_analytics"),
    path("<str:requisition_id>", requisition_get, name="requisition_get"),
    path(
        "<str:requisition_id>/decision",
        requisition_decision,
        name="requisition_decision",
    ),
    path("<str:requisition_id>/split", requisition_split, name="requisition_split"),
    path(
        "<str:requisition_id>/split-items",
        requisition_split_items,
        name="requisition_split_items",
    ),
    path(
        "<str:requisition_id>/auto-split",
        requisition_auto_split,
        name="requisition_auto_split",
    ),
    path("<str:requisition_id>/splits", requisition_splits, name="requisition_splits"),
    path(
        "<str:requisition_id>/history",
        requisition_history,
        name="requisition_history",
    ),
    path(
        "<str:requisition_id>/export.csv",
        requisition_export_csv,
        name="requisition_export_csv",
    ),
]
