"""OperationsDemo schema declared as SQLAlchemy metadata.

The tables deliberately carry a handful of normalization smells so the audit has
something to say:

1. ``python schema_nf_audit.py demo`` audits ``metadata`` with ``DEMO_INVARIANTS``.
2. ``python schema_nf_audit.py demo --generate-invariants`` prints the PK/unique
   dependencies as a starting invariants document.
3. ``python demo_schema.py`` is a shortcut for step 1 in text format.
"""
from __future__ import annotations

import sys

from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    MetaData,
    String,
    Table,
    UniqueConstraint,
)


metadata = MetaData()

customers = Table(
    "customers",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("email", String(255), nullable=False, unique=True),
    Column("name", String(200), nullable=False),
    Column("phone1", String(40)),
    Column("phone2", String(40)),
    Column("tag_ids", String(500)),
    Column("preferences", JSON),
    Column("deleted_at", DateTime),
)

departments = Table(
    "departments",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("name", String(100), nullable=False, unique=True),
    Column("location", String(100)),
)

employees = Table(
    "employees",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("department_id", Integer, ForeignKey("departments.id", ondelete="RESTRICT"), nullable=False),
    Column("dept_name", String(100)),
    Column("dept_location", String(100)),
    Column("deleted_by", String(100)),
)

orders = Table(
    "orders",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("customer_id", Integer, ForeignKey("customers.id", ondelete="CASCADE"), nullable=False),
    Column("ordered_at", DateTime, nullable=False),
    UniqueConstraint("customer_id", "ordered_at", name="uq_orders_customer_time"),
)

products = Table(
    "products",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("sku", String(64), nullable=False, unique=True),
    Column("title", String(200), nullable=False),
)

order_items = Table(
    "order_items",
    metadata,
    Column("order_id", Integer, ForeignKey("orders.id", ondelete="CASCADE"), primary_key=True),
    Column("product_id", Integer, ForeignKey("products.id", ondelete="NO ACTION"), primary_key=True),
    Column("quantity", Integer, nullable=False),
    Column("product_title", String(200)),
)


DEMO_INVARIANTS = {
    "employees": {
        "functionalDependencies": [
            {
                "determinant": ["department_id"],
                "dependent": ["dept_name", "dept_location"],
                "note": "Department attributes copied onto each employee row",
            }
        ]
    },
    "suppress": ["FK_MISSING_INDEX:order_items.product_id"],
}


if __name__ == "__main__":
    from schema_nf_audit import main

    sys.exit(main(["demo", "--format", "text", "--no-timestamp"] + sys.argv[1:]))
