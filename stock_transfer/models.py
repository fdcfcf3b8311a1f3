from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from enum import Enum

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Enum as SQLEnum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# SQLite only autoincrements INTEGER PRIMARY KEY columns.
BigId = BigInteger().with_variant(Integer(), 'sqlite')


class Base(DeclarativeBase):
    pass


class StoreType(str, Enum):
    PHARMACY = 'PHARMACY'
    WAREHOUSE = 'WAREHOUSE'
    HEADQUARTERS = 'HEADQUARTERS'


class LedgerOperation(str, Enum):
    RECEIVE = 'RECEIVE'
    SHIP = 'SHIP'
    ADJUST = 'ADJUST'
    TRANSFER_RESERVE = 'TRANSFER_RESERVE'
    TRANSFER_COMMIT = 'TRANSFER_COMMIT'
    TRANSFER_RELEASE = 'TRANSFER_RELEASE'


class TransferStatus(str, Enum):
    PENDING = 'PENDING'
    APPROVED = 'APPROVED'
    REJECTED = 'REJECTED'
    IN_TRANSIT = 'IN_TRANSIT'
    COMPLETED = 'COMPLETED'
    CANCELLED = 'CANCELLED'


class TransferPriority(str, Enum):
    NORMAL = 'NORMAL'
    URGENT = 'URGENT'
    EMERGENCY = 'EMERGENCY'


class StockLevelStatus(str, Enum):
    OUT_OF_STOCK = 'OUT_OF_STOCK'
    CRITICAL = 'CRITICAL'
    LOW = 'LOW'
    OPTIMAL = 'OPTIMAL'
    EXCESS = 'EXCESS'


class Item(Base):
    __tablename__ = 'items'

    id: Mapped[int] = mapped_column(BigId, primary_key=True)
    sku: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    unit_price: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=Decimal('0.00'))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class Store(Base):
    __tablename__ = 'stores'

    id: Mapped[int] = mapped_column(BigId, primary_key=True)
    code: Mapped[str] = mapped_column(String(20), nullable=False, unique=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    store_type: Mapped[StoreType] = mapped_column(
        SQLEnum(StoreType, name='store_type'), nullable=False, default=StoreType.PHARMACY
    )
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default='true')

    store_inventories_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default='0')
    pending_outgoing_transfers_count: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, server_default='0'
    )
    pending_incoming_transfers_count: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, server_default='0'
    )
    low_stock_items_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default='0')

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())

    @property
    def display_name(self) -> str:
        return f'{self.code} - {self.name}'


class StoreInventory(Base):
    __tablename__ = 'store_inventories'
    __table_args__ = (
        UniqueConstraint('store_id', 'item_id', name='store_inventories_store_item_key'),
        CheckConstraint('quantity >= 0', name='store_inventories_quantity_non_negative_ck'),
        CheckConstraint('reserved_quantity >= 0', name='store_inventories_reserved_non_negative_ck'),
        CheckConstraint('reserved_quantity <= quantity', name='store_inventories_reserved_within_quantity_ck'),
        CheckConstraint('safety_stock_level >= 0', name='store_inventories_safety_non_negative_ck'),
    )

    id: Mapped[int] = mapped_column(BigId, primary_key=True)
    store_id: Mapped[int] = mapped_column(BigInteger, ForeignKey('stores.id', ondelete='CASCADE'), nullable=False)
    item_id: Mapped[int] = mapped_column(BigInteger, ForeignKey('items.id'), nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default='0')
    reserved_quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default='0')
    safety_stock_level: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default='0')
    last_updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())

    @property
    def available_quantity(self) -> int:
        return self.quantity - self.reserved_quantity


class Batch(Base):
    __tablename__ = 'batches'
    __table_args__ = (
        UniqueConstraint('item_id', 'lot_code', name='batches_item_lot_code_key'),
        CheckConstraint('quantity >= 0', name='batches_quantity_non_negative_ck'),
        CheckConstraint('quantity <= initial_quantity', name='batches_quantity_within_initial_ck'),
    )

    id: Mapped[int] = mapped_column(BigId, primary_key=True)
    item_id: Mapped[int] = mapped_column(BigInteger, ForeignKey('items.id'), nullable=False)
    lot_code: Mapped[str] = mapped_column(String(64), nullable=False)
    origin_store_id: Mapped[int] = mapped_column(BigInteger, ForeignKey('stores.id'), nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    initial_quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    expires_on: Mapped[date | None] = mapped_column(Date)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())

    def is_expired(self, today: date) -> bool:
        return self.expires_on is not None and self.expires_on < today

    def is_expiring_soon(self, today: date, days: int = 30) -> bool:
        if self.expires_on is None or self.is_expired(today):
            return False
        return (self.expires_on - today).days < days


class BatchMovement(Base):
    __tablename__ = 'batch_movements'
    __table_args__ = (
        CheckConstraint('quantity > 0', name='batch_movements_quantity_positive_ck'),
        Index('ix_batch_movements_batch_id', 'batch_id'),
    )

    id: Mapped[int] = mapped_column(BigId, primary_key=True)
    batch_id: Mapped[int] = mapped_column(BigInteger, ForeignKey('batches.id'), nullable=False)
    from_store_id: Mapped[int] = mapped_column(BigInteger, ForeignKey('stores.id'), nullable=False)
    # NULL destination: the quantity left the chain (dispensed or shipped out).
    to_store_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey('stores.id'))
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    transfer_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey('inter_store_transfers.id'))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class StockLedgerEntry(Base):
    __tablename__ = 'stock_ledger_entries'
    __table_args__ = (
        Index('ix_stock_ledger_entries_store_item', 'store_id', 'item_id'),
    )

    id: Mapped[int] = mapped_column(BigId, primary_key=True)
    store_id: Mapped[int] = mapped_column(BigInteger, ForeignKey('stores.id'), nullable=False)
    item_id: Mapped[int] = mapped_column(BigInteger, ForeignKey('items.id'), nullable=False)
    operation_type: Mapped[LedgerOperation] = mapped_column(
        SQLEnum(LedgerOperation, name='ledger_operation'), nullable=False
    )
    delta: Mapped[int] = mapped_column(Integer, nullable=False)
    reserved_delta: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default='0')
    previous_quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    resulting_quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    previous_reserved_quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    resulting_reserved_quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    reference: Mapped[str | None] = mapped_column(Text)
    transfer_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey('inter_store_transfers.id'))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class InterStoreTransfer(Base):
    __tablename__ = 'inter_store_transfers'
    __table_args__ = (
        CheckConstraint('quantity > 0', name='inter_store_transfers_quantity_positive_ck'),
        CheckConstraint('source_store_id <> destination_store_id', name='inter_store_transfers_distinct_stores_ck'),
        Index('ix_inter_store_transfers_source_status', 'source_store_id', 'status'),
        Index('ix_inter_store_transfers_destination_status', 'destination_store_id', 'status'),
    )

    id: Mapped[int] = mapped_column(BigId, primary_key=True)
    source_store_id: Mapped[int] = mapped_column(BigInteger, ForeignKey('stores.id'), nullable=False)
    destination_store_id: Mapped[int] = mapped_column(BigInteger, ForeignKey('stores.id'), nullable=False)
    item_id: Mapped[int] = mapped_column(BigInteger, ForeignKey('items.id'), nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[TransferStatus] = mapped_column(
        SQLEnum(TransferStatus, name='transfer_status'),
        nullable=False,
        default=TransferStatus.PENDING,
        server_default='PENDING',
    )
    priority: Mapped[TransferPriority] = mapped_column(
        SQLEnum(TransferPriority, name='transfer_priority'),
        nullable=False,
        default=TransferPriority.NORMAL,
        server_default='NORMAL',
    )
    requested_by_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    approved_by_id: Mapped[int | None] = mapped_column(BigInteger)
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    notes: Mapped[str | None] = mapped_column(Text)
    requested_delivery_date: Mapped[date | None] = mapped_column(Date)
    requested_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    approved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    shipped_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    cancellation_reason: Mapped[str | None] = mapped_column(Text)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))


class AuditLog(Base):
    __tablename__ = 'audit_log'

    id: Mapped[int] = mapped_column(BigId, primary_key=True)
    actor_id: Mapped[int | None] = mapped_column(BigInteger)
    action: Mapped[str] = mapped_column(Text, nullable=False)
    transfer_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey('inter_store_transfers.id'))
    meta: Mapped[dict] = mapped_column('metadata', JSON, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
