import uuid
from decimal import Decimal

from django.core.serializers.json import DjangoJSONEncoder
from django.db import models


class OrderModel(models.Model):
    # UUID PK exposed in the API, assigned by the domain
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)

    class Status(models.TextChoices):
        PENDING = "pending"
        CONFIRMED = "confirmed"
        PROCESSING = "processing"
        SHIPPED = "shipped"
        DELIVERED = "delivered"
        CANCELLED = "cancelled"
        REFUNDED = "refunded"

    customer_id = models.UUIDField(db_index=True)
    email = models.CharField(max_length=255, db_index=True)
    status = models.CharField(max_length=32, choices=Status.choices, default=Status.PENDING, db_index=True)
    total_amount = models.DecimalField(max_digits=12, decimal_places=2, default=Decimal("0.00"), db_index=True)
    currency = models.CharField(max_length=3, default="USD")
    metadata = models.JSONField(default=dict, blank=True, encoder=DjangoJSONEncoder)
    # Optimistic concurrency counter, bumped on every write
    version = models.PositiveIntegerField(default=1)
    # Timestamps come from the aggregate, not auto_now
    created_at = models.DateTimeField(db_index=True)
    updated_at = models.DateTimeField(db_index=True)

    class Meta:
        db_table = "orders"
        ordering = ["-created_at"]
        indexes = [
            models.Index(fields=["customer_id", "status"], name="idx_orders_customer_status"),
            models.Index(fields=["status", "-created_at"], name="idx_orders_status_created"),
        ]


class OrderItemModel(models.Model):
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    order = models.ForeignKey(OrderModel, related_name="items", on_delete=models.CASCADE)
    product_id = models.UUIDField(db_index=True)
    name = models.CharField(max_length=255)
    price = models.DecimalField(max_digits=10, decimal_places=2)
    quantity = models.PositiveIntegerField()
    total = models.DecimalField(max_digits=12, decimal_places=2)
    # Keeps the insertion order of lines stable on read
    position = models.PositiveIntegerField(default=0)

    class Meta:
        db_table = "order_items"
        ordering = ["position"]


class OrderAddressModel(models.Model):
    class Type(models.TextChoices):
        SHIPPING = "shipping"
        BILLING = "billing"

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    order = models.ForeignKey(OrderModel, related_name="addresses", on_delete=models.CASCADE)
    type = models.CharField(max_length=20, choices=Type.choices)
    street = models.CharField(max_length=255)
    city = models.CharField(max_length=100)
    state = models.CharField(max_length=100, blank=True, default="")
    country = models.CharField(max_length=100)
    zip_code = models.CharField(max_length=20)

    class Meta:
        db_table = "order_addresses"
        constraints = [
            models.UniqueConstraint(fields=["order", "type"], name="ux_order_address_type"),
        ]


class IdempotencyKey(models.Model):
    # Client-provided Idempotency-Key header
    key = models.CharField(max_length=200, primary_key=True)
    # Canonical request hash (sha256 hex)
    request_hash = models.CharField(max_length=64)
    response_status = models.PositiveIntegerField(default=0)
    response_body = models.JSONField(default=dict, blank=True, encoder=DjangoJSONEncoder)
    order_id = models.UUIDField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = "idempotency_keys"
