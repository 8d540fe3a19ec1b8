from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from enum import Enum

from sqlalchemy import (
    BigInteger,
    DateTime,
    Enum as SQLEnum,
    ForeignKey,
    Integer,
    LargeBinary,
    Numeric,
    String,
    event,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship, validates


class Base(DeclarativeBase):
    pass


class OrderStatus(str, Enum):
    PENDING = 'PENDING'
    CONFIRMED = 'CONFIRMED'
    SHIPPED = 'SHIPPED'
    DELIVERED = 'DELIVERED'
    CANCELLED = 'CANCELLED'
    COMPLETED = 'COMPLETED'


def to_money(value) -> Decimal | None:
    if value is None:
        return None
    if isinstance(value, float):
        raise TypeError('Monetary values must be Decimal, int or str, not float')
    if isinstance(value, Decimal):
        return value
    return Decimal(value)


class Department(Base):
    __tablename__ = 'departments'

    id: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, 'sqlite'), primary_key=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    description: Mapped[str | None] = mapped_column(String(500))
    budget: Mapped[Decimal | None] = mapped_column(Numeric(14, 2))

    users: Mapped[list[User]] = relationship(back_populates='department', lazy='raise', order_by='User.id')

    @validates('budget')
    def _validate_budget(self, _key, value):
        return to_money(value)


class User(Base):
    __tablename__ = 'users'

    id: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, 'sqlite'), primary_key=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    email: Mapped[str] = mapped_column(String(150), nullable=False, unique=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    department_id: Mapped[int | None] = mapped_column(ForeignKey('departments.id'), index=True)

    department: Mapped[Department | None] = relationship(back_populates='users', lazy='raise')
    orders: Mapped[list[Order]] = relationship(back_populates='user', lazy='raise', order_by='Order.id')


class Category(Base):
    __tablename__ = 'categories'

    id: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, 'sqlite'), primary_key=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    description: Mapped[str | None] = mapped_column(String(500))

    products: Mapped[list[Product]] = relationship(back_populates='category', lazy='raise', order_by='Product.id')


class Product(Base):
    __tablename__ = 'products'

    id: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, 'sqlite'), primary_key=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False, index=True)
    description: Mapped[str | None] = mapped_column(String(1000))
    price: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    stock_quantity: Mapped[int | None] = mapped_column(Integer)
    category_id: Mapped[int | None] = mapped_column(ForeignKey('categories.id'), index=True)
    image: Mapped[bytes | None] = mapped_column('image_data', LargeBinary, deferred=True, deferred_raiseload=True)

    category: Mapped[Category | None] = relationship(back_populates='products', lazy='raise')
    order_items: Mapped[list[OrderItem]] = relationship(back_populates='product', lazy='raise', order_by='OrderItem.id')

    @validates('price')
    def _validate_price(self, _key, value):
        return to_money(value)


class Order(Base):
    __tablename__ = 'orders'

    id: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, 'sqlite'), primary_key=True)
    order_number: Mapped[str] = mapped_column(String(50), nullable=False, unique=True)
    order_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now(), index=True)
    total_amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    status: Mapped[OrderStatus] = mapped_column(
        SQLEnum(OrderStatus, name='order_status'), nullable=False, default=OrderStatus.PENDING, server_default='PENDING'
    )
    user_id: Mapped[int] = mapped_column(ForeignKey('users.id'), nullable=False, index=True)
    invoice: Mapped[bytes | None] = mapped_column('invoice_pdf', LargeBinary, deferred=True, deferred_raiseload=True)

    user: Mapped[User] = relationship(back_populates='orders', lazy='raise')
    items: Mapped[list[OrderItem]] = relationship(
        back_populates='order', lazy='raise', cascade='all, delete-orphan', order_by='OrderItem.id'
    )

    @validates('total_amount')
    def _validate_total_amount(self, _key, value):
        return to_money(value)


class OrderItem(Base):
    __tablename__ = 'order_items'

    id: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, 'sqlite'), primary_key=True)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    unit_price: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    total_price: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    order_id: Mapped[int] = mapped_column(ForeignKey('orders.id', ondelete='CASCADE'), nullable=False, index=True)
    product_id: Mapped[int] = mapped_column(ForeignKey('products.id'), nullable=False, index=True)

    order: Mapped[Order] = relationship(back_populates='items', lazy='raise')
    product: Mapped[Product] = relationship(back_populates='order_items', lazy='raise')

    @validates('quantity', 'unit_price')
    def _recompute_total_price(self, key, value):
        if key == 'unit_price':
            value = to_money(value)
        quantity = value if key == 'quantity' else self.quantity
        unit_price = value if key == 'unit_price' else self.unit_price
        if quantity is not None and unit_price is not None:
            self.total_price = unit_price * quantity
        return value

    @validates('total_price')
    def _validate_total_price(self, _key, value):
        return to_money(value)


@event.listens_for(OrderItem, 'before_insert')
@event.listens_for(OrderItem, 'before_update')
def _sync_total_price(_mapper, _connection, target: OrderItem) -> None:
    if target.quantity is not None and target.unit_price is not None:
        target.total_price = target.unit_price * target.quantity
