from sqlalchemy import (
    Column, Integer, String, DateTime, Text, Boolean, ForeignKey, Float, Date, JSON,
    UniqueConstraint, CheckConstraint, event,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from fieldops.database import Base
from fieldops.exceptions import ImmutableRecordError
from fieldops.utils.clock import utcnow


# Item types
ITEM_MATERIAL = "material"
ITEM_EQUIPMENT = "equipment"
ITEM_TYPES = (ITEM_MATERIAL, ITEM_EQUIPMENT)

# Batch status
BATCH_ACTIVE = "active"
BATCH_EXHAUSTED = "exhausted"

# Equipment instance status
INSTANCE_IN_STOCK = "in_stock"
INSTANCE_ASSIGNED = "assigned_to_crew"
INSTANCE_INSTALLED = "installed"
INSTANCE_RETURNED = "returned"
INSTANCE_DAMAGED = "damaged"
INSTANCE_STATUSES = (
    INSTANCE_IN_STOCK, INSTANCE_ASSIGNED, INSTANCE_INSTALLED, INSTANCE_RETURNED, INSTANCE_DAMAGED,
)

# Inventory movement types
MOVEMENT_ENTRY = "entry"
MOVEMENT_ASSIGNMENT = "assignment"
MOVEMENT_USAGE_ORDER = "usage_order"
MOVEMENT_RETURN = "return"
MOVEMENT_ADJUSTMENT = "adjustment"

# Order types / statuses
ORDER_TYPES = ("installation", "repair", "recovery", "other")
ORDER_STATUSES = ("pending", "assigned", "in_progress", "completed", "cancelled", "visit", "hard")

# Order history change types
CHANGE_CREATED = "created"
CHANGE_STATUS = "status_change"
CHANGE_CREW_ASSIGNMENT = "crew_assignment"
CHANGE_MATERIALS_ADDED = "materials_added"
CHANGE_COMPLETED = "completed"
CHANGE_CANCELLED = "cancelled"
CHANGE_UPDATED = "updated"

# Notification kinds
NOTIFICATION_KINDS = ("new_order", "order_reassigned", "status_change", "test", "other")


class InventoryItem(Base):
    """
    Catalog item. current_stock is the quantity sitting in the central warehouse;
    quantities held by crews live in crew_holdings.
    """
    __tablename__ = "inventory_items"

    id = Column(Integer, primary_key=True, index=True)
    code = Column(String(50), unique=True, nullable=False, index=True)  # Immutable once referenced
    description = Column(String(255), nullable=False)
    unit = Column(String(20), nullable=False, default="units")
    type = Column(String(20), nullable=False, default=ITEM_MATERIAL)  # material, equipment
    current_stock = Column(Integer, nullable=False, default=0)
    minimum_stock = Column(Integer, nullable=False, default=5)
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime, default=func.now())
    updated_at = Column(DateTime, default=func.now(), onupdate=func.now())

    __table_args__ = (
        CheckConstraint("current_stock >= 0", name="ck_inventory_items_stock_non_negative"),
    )

    batches = relationship("InventoryBatch", back_populates="item")
    instances = relationship("EquipmentInstance", back_populates="item")

    @property
    def is_equipment(self) -> bool:
        return self.type == ITEM_EQUIPMENT

    @property
    def is_low_stock(self) -> bool:
        return (self.current_stock or 0) < (self.minimum_stock or 0)


class InventoryBatch(Base):
    """
    Bulk-measured lot of a catalog item (e.g. a cable reel). Status is
    'exhausted' exactly when remaining_quantity reaches zero.
    """
    __tablename__ = "inventory_batches"

    id = Column(Integer, primary_key=True, index=True)
    batch_code = Column(String(50), unique=True, nullable=False, index=True)  # Stored upper-case
    item_id = Column(Integer, ForeignKey("inventory_items.id"), nullable=False)
    initial_quantity = Column(Integer, nullable=False)
    remaining_quantity = Column(Integer, nullable=False)
    unit = Column(String(20), nullable=False, default="meters")
    supplier = Column(String(150), nullable=True)
    acquisition_date = Column(Date, nullable=True)
    notes = Column(Text, nullable=True)

    # Holder: NULL means the reel is in the warehouse
    crew_id = Column(Integer, ForeignKey("crews.id"), nullable=True)
    status = Column(String(20), nullable=False, default=BATCH_ACTIVE)  # active, exhausted

    created_at = Column(DateTime, default=func.now())
    updated_at = Column(DateTime, default=func.now(), onupdate=func.now())

    __table_args__ = (
        CheckConstraint("remaining_quantity >= 0", name="ck_inventory_batches_remaining_non_negative"),
        CheckConstraint("remaining_quantity <= initial_quantity", name="ck_inventory_batches_remaining_le_initial"),
    )

    item = relationship("InventoryItem", back_populates="batches")
    crew = relationship("Crew")


class EquipmentInstance(Base):
    """
    A single serialized unit of an equipment item. crew_id is the current
    holder and is NULL only while the unit sits in the warehouse.
    """
    __tablename__ = "equipment_instances"

    id = Column(Integer, primary_key=True, index=True)
    item_id = Column(Integer, ForeignKey("inventory_items.id"), nullable=False)
    unique_id = Column(String(100), unique=True, nullable=False, index=True)  # Usually the serial number
    serial_number = Column(String(100), nullable=True)
    mac_address = Column(String(50), nullable=True)
    status = Column(String(30), nullable=False, default=INSTANCE_IN_STOCK)

    crew_id = Column(Integer, ForeignKey("crews.id"), nullable=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=True)  # Order that installed it
    assigned_at = Column(DateTime, nullable=True)
    installed_at = Column(DateTime, nullable=True)
    installed_location = Column(String(255), nullable=True)
    notes = Column(Text, nullable=True)

    created_at = Column(DateTime, default=func.now())
    updated_at = Column(DateTime, default=func.now(), onupdate=func.now())

    item = relationship("InventoryItem", back_populates="instances")


class Crew(Base):
    """Mobile work crew. Members point at their crew through Installer.current_crew_id."""
    __tablename__ = "crews"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(100), unique=True, nullable=False)
    number = Column(Integer, unique=True, nullable=True, index=True)  # Crew number used on incoming tickets
    leader_id = Column(
        Integer,
        ForeignKey("installers.id", use_alter=True, name="fk_crews_leader_id"),
        nullable=True,
    )
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime, default=func.now())
    updated_at = Column(DateTime, default=func.now(), onupdate=func.now())

    leader = relationship("Installer", foreign_keys=[leader_id], post_update=True)
    members = relationship(
        "Installer",
        foreign_keys="Installer.current_crew_id",
        back_populates="current_crew",
    )

    @property
    def member_ids(self):
        return [member.id for member in self.members]


class Installer(Base):
    __tablename__ = "installers"

    id = Column(Integer, primary_key=True, index=True)
    code = Column(String(50), unique=True, nullable=False)
    name = Column(String(100), nullable=False)
    surname = Column(String(100), nullable=True)
    phone = Column(String(50), nullable=True)
    status = Column(String(20), nullable=False, default="active")  # active, inactive, vacation
    current_crew_id = Column(Integer, ForeignKey("crews.id"), nullable=True)

    # Device registration for push notifications (FCM or Expo)
    push_token = Column(String(255), nullable=True)
    push_token_updated_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=func.now())

    current_crew = relationship("Crew", foreign_keys=[current_crew_id], back_populates="members")


class CrewHolding(Base):
    """
    Quantity of a catalog item held by a crew. Always equal to the signed sum
    of the inventory movements recorded for the same (crew, item) pair.
    """
    __tablename__ = "crew_holdings"

    crew_id = Column(Integer, ForeignKey("crews.id"), primary_key=True)
    item_id = Column(Integer, ForeignKey("inventory_items.id"), primary_key=True)
    quantity = Column(Integer, nullable=False, default=0)
    last_update = Column(DateTime, default=utcnow)

    __table_args__ = (
        CheckConstraint("quantity >= 0", name="ck_crew_holdings_quantity_non_negative"),
    )

    item = relationship("InventoryItem")


class Order(Base):
    """Field-service work order."""
    __tablename__ = "orders"

    id = Column(Integer, primary_key=True, index=True)
    ticket_id = Column(String(100), unique=True, nullable=True, index=True)  # External ticket reference

    # Subscriber
    subscriber_number = Column(String(50), nullable=True)
    subscriber_name = Column(String(200), nullable=False)
    address = Column(String(500), nullable=False)
    phones = Column(JSON, nullable=True)  # List of phone numbers
    email = Column(String(200), nullable=True)
    node = Column(String(100), nullable=True)
    services_to_install = Column(JSON, nullable=True)

    type = Column(String(20), nullable=False, default="other")
    status = Column(String(20), nullable=False, default="pending", index=True)
    assigned_to = Column(Integer, ForeignKey("crews.id"), nullable=True, index=True)

    reception_date = Column(DateTime, default=utcnow)
    assignment_date = Column(DateTime, nullable=True)
    completion_date = Column(DateTime, nullable=True)

    # Completion report
    report_details = Column(Text, nullable=True)
    customer_signature = Column(String(500), nullable=True)  # URL in object storage
    photo_evidence = Column(JSON, nullable=True)  # List of URLs
    gps_latitude = Column(Float, nullable=True)
    gps_longitude = Column(Float, nullable=True)
    visit_count = Column(Integer, default=0)

    created_by = Column(Integer, nullable=True)
    created_at = Column(DateTime, default=utcnow, index=True)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    crew = relationship("Crew")
    materials_used = relationship(
        "OrderMaterial",
        back_populates="order",
        cascade="all, delete-orphan",
        order_by="OrderMaterial.id",
    )


class OrderMaterial(Base):
    """Material line recorded on an order (by batch, by instances or plain quantity)."""
    __tablename__ = "order_materials"

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(Integer, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False)
    item_id = Column(Integer, ForeignKey("inventory_items.id"), nullable=False)
    quantity = Column(Integer, nullable=False)
    batch_code = Column(String(50), nullable=True)
    instance_ids = Column(JSON, nullable=True)

    order = relationship("Order", back_populates="materials_used")
    item = relationship("InventoryItem")

    def as_dict(self) -> dict:
        return {
            "item_id": self.item_id,
            "quantity": self.quantity,
            "batch_code": self.batch_code,
            "instance_ids": list(self.instance_ids) if self.instance_ids else None,
        }


class OrderHistory(Base):
    """Append-only audit entry for an order change."""
    __tablename__ = "order_history"

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=True, index=True)
    change_type = Column(String(30), nullable=False)
    previous_value = Column(JSON, nullable=True)
    new_value = Column(JSON, nullable=True)
    description = Column(Text, nullable=False)
    crew_id = Column(Integer, ForeignKey("crews.id"), nullable=True)
    changed_by = Column(Integer, nullable=True)
    created_at = Column(DateTime, default=utcnow, index=True)


class InventoryMovement(Base):
    """
    Append-only inventory history. Rows that carry a crew_id are signed from
    the crew holding's perspective; rows without a crew describe the warehouse.
    """
    __tablename__ = "inventory_movements"

    id = Column(Integer, primary_key=True, index=True)
    item_id = Column(Integer, ForeignKey("inventory_items.id"), nullable=False, index=True)
    movement_type = Column(String(20), nullable=False)
    # Types:
    # - entry: stock received into the warehouse
    # - assignment: warehouse -> crew
    # - usage_order: consumed by an order
    # - return: crew -> warehouse
    # - adjustment: damage, corrections
    quantity_change = Column(Integer, nullable=False)
    reason = Column(Text, nullable=True)
    crew_id = Column(Integer, ForeignKey("crews.id"), nullable=True, index=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=True)
    batch_code = Column(String(50), nullable=True)
    performed_by = Column(Integer, nullable=True)
    details = Column(JSON, nullable=True)  # e.g. {"instance_ids": [...]}
    created_at = Column(DateTime, default=utcnow, index=True)

    item = relationship("InventoryItem")


class InventorySnapshot(Base):
    """
    Point-in-time copy of warehouse stock and every active crew's holdings.
    Item code and description are copied so old snapshots read without joins.
    """
    __tablename__ = "inventory_snapshots"

    id = Column(Integer, primary_key=True, index=True)
    snapshot_date = Column(DateTime, nullable=False, index=True)
    warehouse_inventory = Column(JSON, nullable=False)  # [{item_id, code, description, quantity}]
    crew_inventories = Column(JSON, nullable=False)  # [{crew_id, crew_name, items: [...]}]
    total_items = Column(Integer, nullable=False, default=0)  # Distinct items across warehouse and crews
    total_warehouse_stock = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, default=utcnow)


class NotificationMetric(Base):
    """Daily delivery counters per notification kind."""
    __tablename__ = "notification_metrics"

    id = Column(Integer, primary_key=True, index=True)
    date = Column(Date, nullable=False)
    kind = Column(String(30), nullable=False)
    sent = Column(Integer, nullable=False, default=0)
    successful = Column(Integer, nullable=False, default=0)
    failed = Column(Integer, nullable=False, default=0)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint('date', 'kind', name='uq_notification_metrics_date_kind'),
    )


class NotificationErrorCount(Base):
    __tablename__ = "notification_error_counts"

    id = Column(Integer, primary_key=True, index=True)
    date = Column(Date, nullable=False)
    kind = Column(String(30), nullable=False)
    message = Column(String(255), nullable=False)
    count = Column(Integer, nullable=False, default=0)

    __table_args__ = (
        UniqueConstraint('date', 'kind', 'message', name='uq_notification_errors_date_kind_message'),
    )


def _reject_history_mutation(mapper, connection, target):
    raise ImmutableRecordError(type(target).__name__, target.id)


for _history_model in (OrderHistory, InventoryMovement):
    event.listen(_history_model, "before_update", _reject_history_mutation)
    event.listen(_history_model, "before_delete", _reject_history_mutation)
