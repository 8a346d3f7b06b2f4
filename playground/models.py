from sqlalchemy import (
    Column, Integer, String, Boolean, ForeignKey, Text, DateTime, Float, JSON,
    UniqueConstraint, Index,
)
from sqlalchemy.orm import relationship
from sqlalchemy.ext.mutable import MutableDict, MutableList
from datetime import datetime, timezone
import uuid
import enum

from .database import Base


def new_id() -> str:
    return uuid.uuid4().hex


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SectionType(str, enum.Enum):
    metric = "metric"
    chart = "chart"
    table = "table"
    text = "text"
    insight = "insight"
    custom = "custom"


class InsightSeverity(str, enum.Enum):
    info = "info"
    warning = "warning"
    critical = "critical"
    success = "success"


class UsageType(str, enum.Enum):
    generation = "generation"
    edit = "edit"
    section_add = "section_add"
    suggestion = "suggestion"


# ---------------------------
# USER MODEL
# ---------------------------
class User(Base):
    __tablename__ = "user"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String(320), unique=True, index=True, nullable=False)
    username = Column(String, index=True)
    hashed_password = Column(String(1024), nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    is_superuser = Column(Boolean, default=False, nullable=False)
    is_verified = Column(Boolean, default=False, nullable=False)

    threads = relationship("Thread", back_populates="user", cascade="all, delete-orphan")


# ---------------------------
# THREADS / CONVERSATION
# ---------------------------
class Thread(Base):
    __tablename__ = "thread"

    id = Column(String(32), primary_key=True, default=new_id)
    user_id = Column(Integer, ForeignKey("user.id", ondelete="CASCADE"), index=True, nullable=False)
    title = Column(String(200), nullable=True)
    # report currently shown for this conversation; older versions stay addressable
    current_report_id = Column(String(32), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    user = relationship("User", back_populates="threads")
    messages = relationship(
        "ThreadMessage",
        order_by="ThreadMessage.id.asc()",
        cascade="all, delete-orphan",
        back_populates="thread",
        lazy="selectin",
    )
    reports = relationship(
        "Report",
        order_by="Report.created_at.asc()",
        cascade="all, delete-orphan",
        back_populates="thread",
    )


class ThreadMessage(Base):
    __tablename__ = "thread_message"

    id = Column(Integer, primary_key=True)
    thread_id = Column(String(32), ForeignKey("thread.id", ondelete="CASCADE"), index=True, nullable=False)
    role = Column(String(16), nullable=False)  # user|assistant
    content = Column(Text, nullable=False)
    report_id = Column(String(32), nullable=True)
    meta = Column(JSON, nullable=True)  # {model, provider, durationMs}
    created_at = Column(DateTime(timezone=True), default=utcnow)

    thread = relationship("Thread", back_populates="messages")


# ---------------------------
# REPORTS
# ---------------------------
class Report(Base):
    __tablename__ = "report"

    id = Column(String(32), primary_key=True, default=new_id)
    thread_id = Column(String(32), ForeignKey("thread.id", ondelete="CASCADE"), index=True, nullable=False)
    # concatenation of sections in order; the whole cleaned document when no sections were found
    html_content = Column(Text, nullable=False, default="")
    insights = Column(MutableList.as_mutable(JSON), default=list, nullable=False)
    meta = Column(MutableDict.as_mutable(JSON), default=dict, nullable=False)  # {generatedBy, model, provider, prompt, generationTimeMs}
    is_interactive = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    thread = relationship("Thread", back_populates="reports")
    sections = relationship(
        "ReportSection",
        order_by="ReportSection.order.asc()",
        cascade="all, delete-orphan",
        back_populates="report",
        lazy="selectin",
    )
    usage_operations = relationship(
        "UsageOperation",
        order_by="UsageOperation.id.asc()",
        cascade="all, delete-orphan",
        back_populates="report",
    )


# model output lands in these columns unbounded; the store clips to fit
SECTION_TITLE_MAX = 300
SECTION_ANCHOR_MAX = 128


class ReportSection(Base):
    __tablename__ = "report_section"

    id = Column(String(32), primary_key=True, default=new_id)
    report_id = Column(String(32), ForeignKey("report.id", ondelete="CASCADE"), nullable=False)
    # value of the data-section-id attribute the model emitted (not unique)
    anchor = Column(String(SECTION_ANCHOR_MAX), nullable=True)
    type = Column(String(16), nullable=False, default=SectionType.text.value)
    title = Column(String(SECTION_TITLE_MAX), nullable=False, default="Untitled Section")
    html_content = Column(Text, nullable=False)
    order = Column(Integer, nullable=False, default=0)
    version = Column(Integer, nullable=False, default=1)
    meta = Column(MutableDict.as_mutable(JSON), default=dict, nullable=False)  # {originallyGeneratedBy, lastModifiedBy, model, originalPrompt}
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    report = relationship("Report", back_populates="sections")
    edit_history = relationship(
        "SectionEdit",
        order_by="SectionEdit.version.asc()",
        cascade="all, delete-orphan",
        back_populates="section",
        lazy="selectin",
    )

    __table_args__ = (
        Index("ix_report_section_report_order", "report_id", "order"),
    )


class SectionEdit(Base):
    """One row per accepted version of a section. Rows are only ever inserted."""
    __tablename__ = "section_edit"

    id = Column(Integer, primary_key=True)
    section_id = Column(String(32), ForeignKey("report_section.id", ondelete="CASCADE"), index=True, nullable=False)
    version = Column(Integer, nullable=False)
    html_content = Column(Text, nullable=False)
    prompt = Column(Text, nullable=True)
    edited_by = Column(String(320), nullable=False)
    edited_at = Column(DateTime(timezone=True), default=utcnow)

    section = relationship("ReportSection", back_populates="edit_history")

    __table_args__ = (
        UniqueConstraint("section_id", "version", name="uq_section_edit_version"),
    )


# ---------------------------
# USAGE / METERING
# ---------------------------
class UsageOperation(Base):
    __tablename__ = "usage_operation"

    id = Column(Integer, primary_key=True)
    report_id = Column(String(32), ForeignKey("report.id", ondelete="CASCADE"), index=True, nullable=False)
    type = Column(String(16), nullable=False)  # generation|edit|section_add|suggestion
    model = Column(String(128), nullable=False)
    provider = Column(String(32), nullable=False)
    input_tokens = Column(Integer, nullable=False, default=0)
    output_tokens = Column(Integer, nullable=False, default=0)
    cost = Column(Float, nullable=False, default=0.0)
    timestamp = Column(DateTime(timezone=True), default=utcnow)

    report = relationship("Report", back_populates="usage_operations")
