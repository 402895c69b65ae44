from __future__ import annotations
"""SQLAlchemy model for union members (person records keyed by CPF)."""
from datetime import date, datetime
from sqlalchemy import Integer, String, Text, Date, DateTime, Boolean, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func
from app.database import Base

class Member(Base):
    __tablename__ = "members"
    # Natural key for imports: one member per CPF per clinic.
    __table_args__ = (UniqueConstraint("cpf", "clinic_id", name="uq_members_cpf_clinic"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    clinic_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    name: Mapped[str] = mapped_column(String, nullable=False)
    cpf: Mapped[str] = mapped_column(String, nullable=False, index=True)
    phone: Mapped[str] = mapped_column(String, nullable=False)
    email: Mapped[str | None] = mapped_column(String, nullable=True)

    employer_cnpj: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    profession: Mapped[str | None] = mapped_column(String, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    is_union_member: Mapped[bool] = mapped_column(Boolean, default=False)
    union_joined_at: Mapped[date | None] = mapped_column(Date, nullable=True)

    birth_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    gender: Mapped[str | None] = mapped_column(String, nullable=True)
    marital_status: Mapped[str | None] = mapped_column(String, nullable=True)
    mother_name: Mapped[str | None] = mapped_column(String, nullable=True)

    postal_code: Mapped[str | None] = mapped_column(String, nullable=True)
    address: Mapped[str | None] = mapped_column(String, nullable=True)
    neighborhood: Mapped[str | None] = mapped_column(String, nullable=True)
    city: Mapped[str | None] = mapped_column(String, nullable=True)
    state: Mapped[str | None] = mapped_column(String(2), nullable=True)

    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
