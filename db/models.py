import json
import uuid
from datetime import datetime

from sqlalchemy import (
    Column, String, Numeric, Integer, Date, Text, TIMESTAMP, UniqueConstraint
)
from sqlalchemy.orm import declarative_base

Base = declarative_base()


# 1) Replenishment suggestions (audit of computed quantities)
class ReplenishmentSuggestion(Base):
    __tablename__ = "replenishment_suggestions"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    sku = Column(String(100), nullable=False)
    stock_item_id = Column(String(64), nullable=False)
    location_id = Column(String(64), nullable=False, default="")

    avg_daily_demand = Column(Numeric(14, 4), nullable=False)
    std_daily_demand = Column(Numeric(14, 4), nullable=False)
    on_hand = Column(Integer, nullable=False)
    in_order_book = Column(Integer, nullable=False)
    due = Column(Integer, nullable=False)

    reorder_point = Column(Numeric(14, 3), nullable=False)
    safety_stock = Column(Numeric(14, 3), nullable=False)
    target_level = Column(Numeric(14, 3), nullable=False)
    suggested_qty = Column(Integer, nullable=False)
    supplier_id = Column(String(64))

    model_version = Column(String(50), nullable=False)
    generated_at = Column(TIMESTAMP, default=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint(
            "sku", "location_id", "model_version",
            name="uq_replenishment_sku_location_version"
        ),
    )


# 2) Purchase order placements (state machine + resumable cursor)
class PurchaseOrderPlacement(Base):
    __tablename__ = "purchase_order_placements"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    supplier_id = Column(String(64), nullable=False)
    location_id = Column(String(64), nullable=False)
    currency = Column(String(8), nullable=False)
    delivery_date = Column(Date, nullable=False)
    lines_json = Column(Text, nullable=False)

    state = Column(String(32), nullable=False)
    purchase_id = Column(String(64))
    lines_appended = Column(Integer, nullable=False, default=0)
    next_line_index = Column(Integer, nullable=False, default=0)
    total_lines = Column(Integer, nullable=False)

    failure_json = Column(Text)
    version = Column(Integer, nullable=False)

    created_at = Column(TIMESTAMP, default=datetime.utcnow)
    updated_at = Column(TIMESTAMP, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Every UPDATE checks the version it loaded; a concurrent writer raises StaleDataError
    __mapper_args__ = {"version_id_col": version}

    @property
    def lines(self):
        return json.loads(self.lines_json)

    @property
    def failure(self):
        return json.loads(self.failure_json) if self.failure_json else None
