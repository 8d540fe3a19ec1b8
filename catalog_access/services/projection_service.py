from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal

from sqlalchemy import func, select

from catalog_access.db import QuerySession
from catalog_access.models import Category, Department, Order, OrderItem, OrderStatus, Product, User


@dataclass(frozen=True)
class OrderSummary:
    id: int
    order_number: str
    order_date: datetime
    total_amount: Decimal
    status: OrderStatus


@dataclass(frozen=True)
class UserSummary:
    id: int
    name: str
    email: str
    created_at: datetime
    department_name: str | None


@dataclass(frozen=True)
class ProductSummary:
    id: int
    name: str
    price: Decimal
    category_name: str | None


@dataclass(frozen=True)
class OrderStatusStats:
    status: OrderStatus
    order_count: int
    average_total: Decimal


@dataclass(frozen=True)
class DepartmentUserCount:
    department_id: int
    department_name: str
    user_count: int


@dataclass(frozen=True)
class CategoryProductStats:
    category_id: int
    category_name: str
    product_count: int
    average_price: Decimal


@dataclass(frozen=True)
class ProductSales:
    product_id: int
    product_name: str
    units_sold: int


def _money(value) -> Decimal:
    if value is None:
        return Decimal('0.00')
    return Decimal(str(value)).quantize(Decimal('0.01'))


def order_summaries_for_user(qs: QuerySession, user_id: int) -> list[OrderSummary]:
    rows = qs.rows(
        select(Order.id, Order.order_number, Order.order_date, Order.total_amount, Order.status)
        .where(Order.user_id == user_id)
        .order_by(Order.order_date.desc(), Order.id.desc())
    )
    return [OrderSummary(**row) for row in rows]


def user_summaries(qs: QuerySession) -> list[UserSummary]:
    rows = qs.rows(
        select(
            User.id,
            User.name,
            User.email,
            User.created_at,
            Department.name.label('department_name'),
        )
        .outerjoin(Department, Department.id == User.department_id)
        .order_by(User.id.asc())
    )
    return [UserSummary(**row) for row in rows]


def product_summaries(qs: QuerySession, *, category_name: str | None = None) -> list[ProductSummary]:
    stmt = (
        select(Product.id, Product.name, Product.price, Category.name.label('category_name'))
        .outerjoin(Category, Category.id == Product.category_id)
        .order_by(Product.id.asc())
    )
    if category_name is not None:
        stmt = stmt.where(Category.name == category_name)
    return [ProductSummary(**row) for row in qs.rows(stmt)]


def order_statistics(qs: QuerySession) -> list[OrderStatusStats]:
    rows = qs.rows(
        select(
            Order.status,
            func.count(Order.id).label('order_count'),
            func.avg(Order.total_amount).label('average_total'),
        )
        .group_by(Order.status)
        .order_by(Order.status.asc())
    )
    return [
        OrderStatusStats(status=row['status'], order_count=row['order_count'], average_total=_money(row['average_total']))
        for row in rows
    ]


def department_user_counts(qs: QuerySession) -> list[DepartmentUserCount]:
    rows = qs.rows(
        select(
            Department.id.label('department_id'),
            Department.name.label('department_name'),
            func.count(User.id).label('user_count'),
        )
        .outerjoin(User, User.department_id == Department.id)
        .group_by(Department.id, Department.name)
        .order_by(Department.name.asc())
    )
    return [DepartmentUserCount(**row) for row in rows]


def department_revenue(qs: QuerySession, department_id: int, start: datetime, end: datetime) -> Decimal:
    if end < start:
        raise ValueError('End date must be on or after start date')
    total = qs.scalar(
        select(func.sum(Order.total_amount))
        .select_from(Order)
        .join(User, User.id == Order.user_id)
        .where(
            User.department_id == department_id,
            Order.order_date >= start,
            Order.order_date <= end,
        )
    )
    return _money(total)


def top_selling_products(qs: QuerySession, *, limit: int = 10) -> list[ProductSales]:
    units = func.sum(OrderItem.quantity).label('units_sold')
    rows = qs.rows(
        select(Product.id.label('product_id'), Product.name.label('product_name'), units)
        .join(OrderItem, OrderItem.product_id == Product.id)
        .group_by(Product.id, Product.name)
        .order_by(units.desc(), Product.id.asc())
        .limit(limit)
    )
    return [
        ProductSales(product_id=row['product_id'], product_name=row['product_name'], units_sold=int(row['units_sold']))
        for row in rows
    ]


def product_statistics_by_category(qs: QuerySession) -> list[CategoryProductStats]:
    """Product count and average price per category; products without a category are left out."""
    rows = qs.rows(
        select(
            Category.id.label('category_id'),
            Category.name.label('category_name'),
            func.count(Product.id).label('product_count'),
            func.avg(Product.price).label('average_price'),
        )
        .join(Product, Product.category_id == Category.id)
        .group_by(Category.id, Category.name)
        .order_by(Category.name.asc())
    )
    return [
        CategoryProductStats(
            category_id=row['category_id'],
            category_name=row['category_name'],
            product_count=row['product_count'],
            average_price=_money(row['average_price']),
        )
        for row in rows
    ]


def order_items_total(qs: QuerySession, order_id: int) -> Decimal:
    total = qs.scalar(select(func.sum(OrderItem.total_price)).where(OrderItem.order_id == order_id))
    return _money(total)
