"""ORM Models for the BQ cost engine — SQLAlchemy 2.0

Maps the tables the calculator reads (library, catalogues, factors, project
rates, project usage) and writes (snapshots, popularity, job logs).
Factor → catalogue references are plain id columns: a catalogue entry can be
deleted after a factor was attached, and the calculator reports that case.
"""
import uuid
from datetime import datetime, date
from decimal import Decimal
from typing import Optional
from sqlalchemy import (
    String, Text, Boolean, Integer, Numeric, DateTime, Date,
    ForeignKey, Index
)
from sqlalchemy.dialects.postgresql import UUID, JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy.sql import func
from bqcost.db import Base


def gen_uuid():
    return str(uuid.uuid4())


# ── CATALOGUES ────────────────────────────────────────────────────────────────
class MaterialCatalogue(Base):
    __tablename__ = "material_catalogues"
    id: Mapped[str] = mapped_column(UUID(as_uuid=False), primary_key=True, default=gen_uuid)
    code: Mapped[str] = mapped_column(String(50), unique=True, nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    unit: Mapped[Optional[str]] = mapped_column(String(20))
    rate: Mapped[Optional[Decimal]] = mapped_column(Numeric(14, 4), default=0)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class LaborCatalogue(Base):
    __tablename__ = "labor_catalogues"
    id: Mapped[str] = mapped_column(UUID(as_uuid=False), primary_key=True, default=gen_uuid)
    code: Mapped[str] = mapped_column(String(50), unique=True, nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    unit: Mapped[Optional[str]] = mapped_column(String(20), default="hour")
    rate: Mapped[Optional[Decimal]] = mapped_column(Numeric(14, 4), default=0)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class EquipmentCatalogue(Base):
    __tablename__ = "equipment_catalogues"
    id: Mapped[str] = mapped_column(UUID(as_uuid=False), primary_key=True, default=gen_uuid)
    code: Mapped[str] = mapped_column(String(50), unique=True, nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    unit: Mapped[Optional[str]] = mapped_column(String(20), default="hour")
    rate: Mapped[Optional[Decimal]] = mapped_column(Numeric(14, 4), default=0)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


# ── LIBRARY ITEMS & FACTORS ───────────────────────────────────────────────────
class LibraryItem(Base):
    __tablename__ = "library_items"
    id: Mapped[str] = mapped_column(UUID(as_uuid=False), primary_key=True, default=gen_uuid)
    code: Mapped[str] = mapped_column(String(50), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    unit: Mapped[Optional[str]] = mapped_column(String(20), default="EA")
    status: Mapped[str] = mapped_column(String(20), default="draft")  # draft | confirmed | actual
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )
    material_factors: Mapped[list["MaterialFactor"]] = relationship(
        "MaterialFactor", back_populates="library_item", cascade="all, delete-orphan"
    )
    labor_factors: Mapped[list["LaborFactor"]] = relationship(
        "LaborFactor", back_populates="library_item", cascade="all, delete-orphan"
    )
    equipment_factors: Mapped[list["EquipmentFactor"]] = relationship(
        "EquipmentFactor", back_populates="library_item", cascade="all, delete-orphan"
    )


class MaterialFactor(Base):
    __tablename__ = "material_factors"
    id: Mapped[str] = mapped_column(UUID(as_uuid=False), primary_key=True, default=gen_uuid)
    library_item_id: Mapped[str] = mapped_column(
        UUID(as_uuid=False), ForeignKey("library_items.id", ondelete="CASCADE"), nullable=False
    )
    material_catalogue_id: Mapped[Optional[str]] = mapped_column(UUID(as_uuid=False))
    quantity_per_unit: Mapped[Decimal] = mapped_column(Numeric(14, 6), default=0)
    wastage_percentage: Mapped[Optional[Decimal]] = mapped_column(Numeric(6, 2))
    library_item: Mapped["LibraryItem"] = relationship("LibraryItem", back_populates="material_factors")


class LaborFactor(Base):
    __tablename__ = "labor_factors"
    id: Mapped[str] = mapped_column(UUID(as_uuid=False), primary_key=True, default=gen_uuid)
    library_item_id: Mapped[str] = mapped_column(
        UUID(as_uuid=False), ForeignKey("library_items.id", ondelete="CASCADE"), nullable=False
    )
    labor_catalogue_id: Mapped[Optional[str]] = mapped_column(UUID(as_uuid=False))
    hours_per_unit: Mapped[Decimal] = mapped_column(Numeric(14, 6), default=0)
    productivity_factor: Mapped[Optional[Decimal]] = mapped_column(Numeric(8, 4))
    crew_size: Mapped[Optional[Decimal]] = mapped_column(Numeric(8, 2))
    library_item: Mapped["LibraryItem"] = relationship("LibraryItem", back_populates="labor_factors")


class EquipmentFactor(Base):
    __tablename__ = "equipment_factors"
    id: Mapped[str] = mapped_column(UUID(as_uuid=False), primary_key=True, default=gen_uuid)
    library_item_id: Mapped[str] = mapped_column(
        UUID(as_uuid=False), ForeignKey("library_items.id", ondelete="CASCADE"), nullable=False
    )
    equipment_catalogue_id: Mapped[Optional[str]] = mapped_column(UUID(as_uuid=False))
    hours_per_unit: Mapped[Decimal] = mapped_column(Numeric(14, 6), default=0)
    utilization_factor: Mapped[Optional[Decimal]] = mapped_column(Numeric(8, 4))
    library_item: Mapped["LibraryItem"] = relationship("LibraryItem", back_populates="equipment_factors")


# ── PROJECT RATES ─────────────────────────────────────────────────────────────
class ProjectRates(Base):
    __tablename__ = "project_rates"
    id: Mapped[str] = mapped_column(UUID(as_uuid=False), primary_key=True, default=gen_uuid)
    project_id: Mapped[str] = mapped_column(UUID(as_uuid=False), nullable=False, index=True)
    # {catalogue_id: rate}
    materials: Mapped[dict] = mapped_column(JSONB, default=dict)
    labour: Mapped[dict] = mapped_column(JSONB, default=dict)
    equipment: Mapped[dict] = mapped_column(JSONB, default=dict)
    effective_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    expiry_date: Mapped[Optional[date]] = mapped_column(Date)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        Index("ix_project_rates_project_effective", "project_id", "effective_date"),
    )


# ── PROJECT USAGE ─────────────────────────────────────────────────────────────
class EstimateElementItem(Base):
    """A library item placed on a project's estimate, with its quantity."""
    __tablename__ = "estimate_element_items"
    id: Mapped[str] = mapped_column(UUID(as_uuid=False), primary_key=True, default=gen_uuid)
    project_id: Mapped[str] = mapped_column(UUID(as_uuid=False), nullable=False, index=True)
    element_id: Mapped[Optional[str]] = mapped_column(UUID(as_uuid=False))
    library_item_id: Mapped[Optional[str]] = mapped_column(UUID(as_uuid=False), index=True)
    quantity: Mapped[Optional[Decimal]] = mapped_column(Numeric(14, 4))


class EstimateLibraryUsage(Base):
    __tablename__ = "estimate_library_usage"
    id: Mapped[str] = mapped_column(UUID(as_uuid=False), primary_key=True, default=gen_uuid)
    library_item_id: Mapped[str] = mapped_column(UUID(as_uuid=False), nullable=False)
    project_id: Mapped[str] = mapped_column(UUID(as_uuid=False), nullable=False)
    element_id: Mapped[Optional[str]] = mapped_column(UUID(as_uuid=False))
    quantity: Mapped[Optional[Decimal]] = mapped_column(Numeric(14, 4))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), index=True)


class LibraryItemPopularity(Base):
    __tablename__ = "library_item_popularity"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    library_item_id: Mapped[str] = mapped_column(UUID(as_uuid=False), unique=True, nullable=False)
    usage_count_30d: Mapped[int] = mapped_column(Integer, default=0)
    last_used_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    popularity_score: Mapped[Decimal] = mapped_column(Numeric(6, 2), default=0)
    commonly_paired_with: Mapped[list] = mapped_column(JSONB, default=list)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


# ── SNAPSHOTS & JOB LOGS ──────────────────────────────────────────────────────
class PriceSnapshot(Base):
    __tablename__ = "price_snapshots"
    id: Mapped[str] = mapped_column(UUID(as_uuid=False), primary_key=True, default=gen_uuid)
    project_id: Mapped[str] = mapped_column(UUID(as_uuid=False), nullable=False, index=True)
    snapshot_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    project_rates: Mapped[dict] = mapped_column(JSONB, default=dict)
    item_prices: Mapped[dict] = mapped_column(JSONB, default=dict)
    # "metadata" is reserved on declarative classes
    snapshot_metadata: Mapped[dict] = mapped_column("metadata", JSONB, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class BackgroundJobLog(Base):
    __tablename__ = "background_job_logs"
    id: Mapped[str] = mapped_column(UUID(as_uuid=False), primary_key=True, default=gen_uuid)
    job_name: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(20), default="running")  # running | completed | failed
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    error_message: Mapped[Optional[str]] = mapped_column(Text)
    job_metadata: Mapped[dict] = mapped_column("metadata", JSONB, default=dict)
