"""
Django model for the purchase requisition table.

Line items and the decision history are stored as JSON columns on the
requisition row; ``version_nbr`` carries the optimistic-lock counter used
by ``workflow_store_db.save``.
"""

from django.db import models


class PurchaseRequisition(models.Model):
    """One purchase requisition, keyed by its UUID."""

    STATUS_CHOICES = [
        ('PENDING_HOD_APPROVAL', 'Pending HOD Approval'),
        ('PENDING_FINANCE_APPROVAL', 'Pending Finance Approval'),
        ('APPROVED', 'Approved'),
        ('DECLINED', 'Declined'),
        ('Split', 'Split'),
    ]
    DECISION_CHOICES = [
        ('Pending', 'Pending'),
        ('Approved', 'Approved'),
        ('Declined', 'Declined'),
    ]

    id = models.CharField(max_length=36, primary_key=True)
    transaction_id = models.CharField(max_length=64, unique=True)
    type = models.CharField(max_length=40, default='PURCHASE_REQUISITION')
    request_date = models.CharField(max_length=32, null=True, blank=True)
    due_date = models.CharField(max_length=32, null=True, blank=True)
    payment_due_date = models.CharField(max_length=32, null=True, blank=True)
    items = models.JSONField(default=list)
    urgency_level = models.CharField(max_length=10, default='NORMAL')
    department = models.CharField(max_length=120, null=True, blank=True)
    budget_code = models.CharField(max_length=60, null=True, blank=True)
    project_code = models.CharField(max_length=60, null=True, blank=True)
    supplier_preference = models.CharField(max_length=255, null=True, blank=True)
    delivery_location = models.CharField(max_length=255, null=True, blank=True)
    special_instructions = models.TextField(null=True, blank=True)
    status = models.CharField(max_length=30, choices=STATUS_CHOICES, default='PENDING_HOD_APPROVAL')
    hod_status = models.CharField(max_length=10, choices=DECISION_CHOICES, default='Pending')
    finance_status = models.CharField(max_length=10, choices=DECISION_CHOICES, default='Pending')
    total_amount = models.DecimalField(max_digits=14, decimal_places=2)
    currency = models.CharField(max_length=3, default='ZAR')
    requested_by = models.CharField(max_length=120)
    requested_by_name = models.CharField(max_length=255, null=True, blank=True)
    requested_by_role = models.CharField(max_length=40, null=True, blank=True)
    requested_by_department = models.CharField(max_length=120, null=True, blank=True)
    history = models.JSONField(default=list)
    is_split = models.BooleanField(default=False)
    original_transaction_id = models.CharField(max_length=64, null=True, blank=True)
    split_reason = models.TextField(null=True, blank=True)
    budget_approval = models.CharField(max_length=30, null=True, blank=True)
    created_at = models.DateTimeField()
    updated_at = models.DateTimeField()
    version_nbr = models.IntegerField(default=1)

    class Meta:
        db_table = 'purchase_requisitions'
        ordering = ['-created_at']
        indexes = [
            models.Index(fields=['requested_by'], name='idx_pr_requested_by'),
            models.Index(fields=['requested_by_department', 'hod_status'], name='idx_pr_dept_hod'),
            models.Index(fields=['original_transaction_id'], name='idx_pr_original_txn'),
        ]

    def __str__(self):
        return f"{self.transaction_id} ({self.status})"
