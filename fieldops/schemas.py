from pydantic import BaseModel, Field
from datetime import datetime, date
from typing import Optional, List, Literal, Any


ItemType = Literal["material", "equipment"]
OrderType = Literal["installation", "repair", "recovery", "other"]
OrderStatus = Literal["pending", "assigned", "in_progress", "completed", "cancelled", "visit", "hard"]


class Actor(BaseModel):
    """Who is performing the request, as supplied by the identity collaborator."""
    id: Optional[int] = None
    role: str = "admin"
    name: Optional[str] = None


# Inventory catalog

class ItemCreate(BaseModel):
    code: str = Field(..., min_length=1, max_length=50)
    description: str
    unit: str = "units"
    type: ItemType = "material"
    minimum_stock: Optional[int] = Field(None, ge=0)  # Falls back to DEFAULT_MINIMUM_STOCK


class ItemUpdate(BaseModel):
    code: Optional[str] = None
    description: Optional[str] = None
    unit: Optional[str] = None
    minimum_stock: Optional[int] = Field(None, ge=0)
    is_active: Optional[bool] = None


class ItemResponse(BaseModel):
    id: int
    code: str
    description: str
    unit: str
    type: str
    current_stock: int
    minimum_stock: int
    is_active: Optional[bool] = True
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class RestockRequest(BaseModel):
    quantity: int
    reason: Optional[str] = None


class InventoryStatistics(BaseModel):
    total_items: int
    warehouse_units: int
    crew_units: int
    low_stock_items: int
    active_batches: int
    exhausted_batches: int
    instances_by_status: dict


class SnapshotLine(BaseModel):
    item_id: int
    code: str
    description: str
    quantity: int


class CrewSnapshot(BaseModel):
    crew_id: int
    crew_name: str
    items: List[SnapshotLine]


class InventorySnapshotResponse(BaseModel):
    id: int
    snapshot_date: datetime
    warehouse_inventory: List[SnapshotLine]
    crew_inventories: List[CrewSnapshot]
    total_items: int
    total_warehouse_stock: int
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


# Batches

class BatchCreate(BaseModel):
    batch_code: str = Field(..., min_length=1, max_length=50)
    item_id: int
    initial_quantity: int
    unit: str = "meters"
    supplier: Optional[str] = None
    acquisition_date: Optional[date] = None
    notes: Optional[str] = None


class BatchMetersRequest(BaseModel):
    meters: int


class BatchAssignRequest(BaseModel):
    crew_id: int


class BatchReturnRequest(BaseModel):
    reason: str


class BatchResponse(BaseModel):
    id: int
    batch_code: str
    item_id: int
    initial_quantity: int
    remaining_quantity: int
    unit: str
    supplier: Optional[str] = None
    acquisition_date: Optional[date] = None
    notes: Optional[str] = None
    crew_id: Optional[int] = None
    status: str
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


# Equipment instances

class InstanceCreate(BaseModel):
    unique_id: str = Field(..., min_length=1, max_length=100)
    serial_number: Optional[str] = None
    mac_address: Optional[str] = None
    notes: Optional[str] = None


class InstancesAddRequest(BaseModel):
    item_id: int
    instances: List[InstanceCreate]


class InstanceAssignRequest(BaseModel):
    instance_ids: List[str]
    crew_id: int


class InstanceReturnRequest(BaseModel):
    instance_ids: List[str]
    reason: str


class InstanceDamageRequest(BaseModel):
    reason: str


class InstanceResponse(BaseModel):
    id: int
    item_id: int
    unique_id: str
    serial_number: Optional[str] = None
    mac_address: Optional[str] = None
    status: str
    crew_id: Optional[int] = None
    order_id: Optional[int] = None
    assigned_at: Optional[datetime] = None
    installed_at: Optional[datetime] = None

    class Config:
        from_attributes = True


# Crew holdings / history

class HoldingGrantRequest(BaseModel):
    item_id: int
    quantity: int
    reason: Optional[str] = None


class HoldingReturnRequest(BaseModel):
    item_id: int
    quantity: int
    reason: str


class HoldingResponse(BaseModel):
    crew_id: int
    item_id: int
    quantity: int
    last_update: Optional[datetime] = None

    class Config:
        from_attributes = True


class MovementResponse(BaseModel):
    id: int
    item_id: int
    movement_type: str
    quantity_change: int
    reason: Optional[str] = None
    crew_id: Optional[int] = None
    order_id: Optional[int] = None
    batch_code: Optional[str] = None
    performed_by: Optional[int] = None
    details: Optional[dict] = None
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


# Crews and installers

class InstallerCreate(BaseModel):
    code: str
    name: str
    surname: Optional[str] = None
    phone: Optional[str] = None


class InstallerResponse(BaseModel):
    id: int
    code: str
    name: str
    surname: Optional[str] = None
    phone: Optional[str] = None
    status: str
    current_crew_id: Optional[int] = None
    push_token_updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class CrewCreate(BaseModel):
    name: str
    number: Optional[int] = None
    leader_id: Optional[int] = None
    member_ids: List[int] = []


class CrewMembersUpdate(BaseModel):
    leader_id: Optional[int] = None
    member_ids: List[int] = []


class CrewResponse(BaseModel):
    id: int
    name: str
    number: Optional[int] = None
    leader_id: Optional[int] = None
    is_active: Optional[bool] = True
    member_ids: List[int] = []

    class Config:
        from_attributes = True


class PushTokenRequest(BaseModel):
    token: str = Field(..., min_length=1, max_length=255)


class TokenCleanupResponse(BaseModel):
    removed: int
    cutoff: datetime


class TestNotificationRequest(BaseModel):
    crew_id: int
    title: str = "Test notification"
    body: str = "Push notifications are working"


# Orders

class OrderMaterialInput(BaseModel):
    item_id: int
    quantity: Optional[int] = None  # Derived from instance_ids when omitted
    batch_code: Optional[str] = None
    instance_ids: Optional[List[str]] = None


class OrderMaterialResponse(BaseModel):
    item_id: int
    quantity: int
    batch_code: Optional[str] = None
    instance_ids: Optional[List[str]] = None

    class Config:
        from_attributes = True


class OrderCreateCommand(BaseModel):
    ticket_id: Optional[str] = None
    subscriber_number: Optional[str] = None
    subscriber_name: str = Field(..., min_length=1)
    address: str = Field(..., min_length=1)
    phones: List[str] = []
    email: Optional[str] = None
    node: Optional[str] = None
    services_to_install: List[str] = []
    type: OrderType = "other"
    status: OrderStatus = "pending"
    crew_number: Optional[int] = None
    assigned_to: Optional[int] = None
    reception_date: Optional[datetime] = None


class OrderUpdateCommand(BaseModel):
    """Partial update; only fields present in the request are applied."""
    status: Optional[OrderStatus] = None
    assigned_to: Optional[int] = None
    materials_used: Optional[List[OrderMaterialInput]] = None
    report_details: Optional[str] = None
    customer_signature: Optional[str] = None
    photo_evidence: Optional[List[str]] = None
    gps_latitude: Optional[float] = None
    gps_longitude: Optional[float] = None
    subscriber_number: Optional[str] = None
    subscriber_name: Optional[str] = None
    address: Optional[str] = None
    phones: Optional[List[str]] = None
    email: Optional[str] = None
    node: Optional[str] = None
    services_to_install: Optional[List[str]] = None
    type: Optional[OrderType] = None
    visit_count: Optional[int] = None


class OrderResponse(BaseModel):
    id: int
    ticket_id: Optional[str] = None
    subscriber_number: Optional[str] = None
    subscriber_name: str
    address: str
    phones: Optional[List[str]] = None
    email: Optional[str] = None
    node: Optional[str] = None
    services_to_install: Optional[List[str]] = None
    type: str
    status: str
    assigned_to: Optional[int] = None
    reception_date: Optional[datetime] = None
    assignment_date: Optional[datetime] = None
    completion_date: Optional[datetime] = None
    report_details: Optional[str] = None
    customer_signature: Optional[str] = None
    photo_evidence: Optional[List[str]] = None
    gps_latitude: Optional[float] = None
    gps_longitude: Optional[float] = None
    visit_count: Optional[int] = 0
    materials_used: List[OrderMaterialResponse] = []
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class OrderHistoryResponse(BaseModel):
    id: int
    order_id: Optional[int] = None
    change_type: str
    previous_value: Optional[Any] = None
    new_value: Optional[Any] = None
    description: str
    crew_id: Optional[int] = None
    changed_by: Optional[int] = None
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


# Notification metrics

class NotificationErrorResponse(BaseModel):
    message: str
    count: int


class NotificationMetricResponse(BaseModel):
    date: date
    kind: str
    sent: int
    successful: int
    failed: int
    success_rate: float
    errors: List[NotificationErrorResponse] = []
