"""
ORM models for the personnel board database.

Column names are snake_case; ``to_dict()`` emits the camelCase shape used on
the wire and tags every person-bearing row with its ``occupancy``.
"""
import uuid

from sqlalchemy import (
    Boolean, Column, DateTime, ForeignKey, Index, Integer, String, Text,
)
from sqlalchemy.orm import declarative_base, relationship
from sqlalchemy.sql import func

from .occupancy import classify_occupancy

Base = declarative_base()


def _uuid() -> str:
    return str(uuid.uuid4())


def _iso(value):
    return value.isoformat() if value else None


# Personal fields shared by roster rows and movement snapshots:
# (attribute, wire key)
PERSON_FIELDS = (
    ('no_id', 'noId'),
    ('national_id', 'nationalId'),
    ('full_name', 'fullName'),
    ('rank', 'rank'),
    ('seniority', 'seniority'),
    ('age', 'age'),
    ('birth_date', 'birthDate'),
    ('education', 'education'),
    ('last_appointment', 'lastAppointment'),
    ('current_rank_since', 'currentRankSince'),
    ('enrollment_date', 'enrollmentDate'),
    ('retirement_date', 'retirementDate'),
    ('years_of_service', 'yearsOfService'),
    ('training_location', 'trainingLocation'),
    ('training_course', 'trainingCourse'),
)


class PosCode(Base):
    """Position-code master. Lower ids denote higher ranks."""
    __tablename__ = "pos_code_master"

    id = Column(Integer, primary_key=True, autoincrement=False)
    name = Column(String(100), nullable=False)

    def to_dict(self):
        return {"id": self.id, "name": self.name}


class PersonnelSlot(Base):
    """One authorized position for one fiscal year, occupied or not."""
    __tablename__ = "police_personnel"
    __table_args__ = (
        Index("ix_police_personnel_year_unit_posnum", "year", "unit", "position_number"),
    )

    id = Column(String(36), primary_key=True, default=_uuid)
    no_id = Column(Integer, nullable=True)
    year = Column(Integer, nullable=False, index=True)
    is_active = Column(Boolean, nullable=False, default=True)

    unit = Column(String(200))
    position_number = Column(String(50))
    position = Column(String(200))
    pos_code_id = Column(Integer, ForeignKey("pos_code_master.id"), nullable=True)
    acting_as = Column(String(200))

    full_name = Column(String(200))
    rank = Column(String(100))
    national_id = Column(String(20), index=True)
    seniority = Column(String(50))
    age = Column(String(20))
    birth_date = Column(String(30))
    education = Column(String(200))
    last_appointment = Column(String(30))
    current_rank_since = Column(String(30))
    enrollment_date = Column(String(30))
    retirement_date = Column(String(30))
    years_of_service = Column(String(20))
    training_location = Column(String(200))
    training_course = Column(String(200))

    supporter_name = Column(String(200))
    support_reason = Column(Text)
    requested_position = Column(String(200))
    notes = Column(Text)
    avatar_url = Column(String(300))

    pos_code = relationship("PosCode", lazy="joined")

    def __repr__(self):
        return f"<PersonnelSlot {self.unit}#{self.position_number} year={self.year}>"

    def to_dict(self):
        d = {"id": self.id}
        for attr, key in PERSON_FIELDS:
            d[key] = getattr(self, attr)
        d.update({
            "year": self.year,
            "unit": self.unit,
            "positionNumber": self.position_number,
            "position": self.position,
            "posCodeId": self.pos_code_id,
            "posCodeMaster": self.pos_code.to_dict() if self.pos_code else None,
            "actingAs": self.acting_as,
            "supporterName": self.supporter_name,
            "supportReason": self.support_reason,
            "requestedPosition": self.requested_position,
            "notes": self.notes,
            "avatarUrl": self.avatar_url,
            "occupancy": classify_occupancy(self.full_name),
        })
        return d


class SwapTransaction(Base):
    """One administrative action grouping one or more movement records."""
    __tablename__ = "swap_transactions"

    id = Column(String(36), primary_key=True, default=_uuid)
    year = Column(Integer, nullable=False, index=True)
    swap_date = Column(DateTime(timezone=True), server_default=func.now())
    swap_type = Column(String(30), nullable=False, default="two-way")
    group_name = Column(String(300))
    group_number = Column(String(50))
    status = Column(String(30), nullable=False, default="completed")
    is_completed = Column(Boolean, nullable=False, default=False)
    notes = Column(Text)
    created_by = Column(String(100))
    updated_by = Column(String(100))
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False,
    )

    details = relationship(
        "SwapTransactionDetail",
        back_populates="transaction",
        cascade="all, delete-orphan",
        order_by="SwapTransactionDetail.sequence",
    )

    def __repr__(self):
        return f"<SwapTransaction {self.id} {self.swap_type} year={self.year}>"

    def summary_dict(self):
        """The slim transaction view attached to reconciled rows."""
        return {
            "id": self.id,
            "year": self.year,
            "swapDate": _iso(self.swap_date),
            "swapType": self.swap_type,
            "groupNumber": self.group_number,
            "groupName": self.group_name,
        }

    def to_dict(self, include_details: bool = True):
        d = self.summary_dict()
        d.update({
            "status": self.status,
            "isCompleted": bool(self.is_completed),
            "notes": self.notes,
            "createdBy": self.created_by,
            "updatedBy": self.updated_by,
            "createdAt": _iso(self.created_at),
            "updatedAt": _iso(self.updated_at),
        })
        if include_details:
            d["swapDetails"] = [detail.to_dict() for detail in self.details]
        return d


class SwapTransactionDetail(Base):
    """One person's origin -> destination step within a transaction."""
    __tablename__ = "swap_transaction_details"

    id = Column(String(36), primary_key=True, default=_uuid)
    transaction_id = Column(
        String(36),
        ForeignKey("swap_transactions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    sequence = Column(Integer)
    personnel_id = Column(String(36), nullable=True, index=True)
    is_placeholder = Column(Boolean, nullable=False, default=False)

    no_id = Column(Integer)
    national_id = Column(String(20), index=True)
    full_name = Column(String(200))
    rank = Column(String(100))
    seniority = Column(String(50))
    age = Column(String(20))
    birth_date = Column(String(30))
    education = Column(String(200))
    last_appointment = Column(String(30))
    current_rank_since = Column(String(30))
    enrollment_date = Column(String(30))
    retirement_date = Column(String(30))
    years_of_service = Column(String(20))
    training_location = Column(String(200))
    training_course = Column(String(200))

    support_name = Column(String(200))
    support_reason = Column(Text)
    requested_position = Column(String(200))
    notes = Column(Text)

    pos_code_id = Column(Integer, ForeignKey("pos_code_master.id"), nullable=True)
    from_position = Column(String(200))
    from_position_number = Column(String(50))
    from_unit = Column(String(200))
    from_acting_as = Column(String(200))

    to_pos_code_id = Column(Integer, ForeignKey("pos_code_master.id"), nullable=True)
    to_position = Column(String(200))
    to_position_number = Column(String(50))
    to_unit = Column(String(200))
    to_acting_as = Column(String(200))

    transaction = relationship("SwapTransaction", back_populates="details")
    pos_code = relationship("PosCode", foreign_keys=[pos_code_id], lazy="joined")
    to_pos_code = relationship("PosCode", foreign_keys=[to_pos_code_id], lazy="joined")

    def __repr__(self):
        return (
            f"<SwapTransactionDetail {self.full_name!r} "
            f"{self.from_unit}#{self.from_position_number} -> {self.to_unit}#{self.to_position_number}>"
        )

    def to_dict(self):
        d = {
            "id": self.id,
            "transactionId": self.transaction_id,
            "sequence": self.sequence,
            "personnelId": self.personnel_id,
            "isPlaceholder": bool(self.is_placeholder),
        }
        for attr, key in PERSON_FIELDS:
            d[key] = getattr(self, attr)
        d.update({
            "supportName": self.support_name,
            "supportReason": self.support_reason,
            "requestedPosition": self.requested_position,
            "notes": self.notes,
            "posCodeId": self.pos_code_id,
            "posCodeMaster": self.pos_code.to_dict() if self.pos_code else None,
            "fromPosition": self.from_position,
            "fromPositionNumber": self.from_position_number,
            "fromUnit": self.from_unit,
            "fromActingAs": self.from_acting_as,
            "toPosCodeId": self.to_pos_code_id,
            "toPosCodeMaster": self.to_pos_code.to_dict() if self.to_pos_code else None,
            "toPosition": self.to_position,
            "toPositionNumber": self.to_position_number,
            "toUnit": self.to_unit,
            "toActingAs": self.to_acting_as,
            "occupancy": classify_occupancy(self.full_name),
        })
        return d


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, autoincrement=True)
    username = Column(String(100), nullable=False, unique=True)
    password_hash = Column(String(200), nullable=False)
    full_name = Column(String(200))
    role = Column(String(20), nullable=False, default="user")
    is_active = Column(Boolean, nullable=False, default=True)
    last_login = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    def to_dict(self):
        return {
            "id": self.id,
            "username": self.username,
            "fullName": self.full_name,
            "role": self.role,
            "isActive": bool(self.is_active),
            "lastLogin": _iso(self.last_login),
        }
