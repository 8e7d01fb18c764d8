from sqlalchemy import (
    Column,
    Integer,
    String,
    Boolean,
    TIMESTAMP,
    Text,
    JSON,
    UniqueConstraint,
)
from sqlalchemy.sql import func, true

from app.core.database import Base


# =========================
# Prompt templates
# =========================
class PromptTemplate(Base):
    """
    One row per template version.
    Only one row per (product, kind) is active; the highest active version wins.
    """

    __tablename__ = "prompt_templates"
    __table_args__ = (UniqueConstraint("product", "kind", "version"),)

    id = Column(Integer, primary_key=True, autoincrement=True)

    product = Column(String(64), nullable=False, index=True)
    kind = Column(String(32), nullable=False)
    name = Column(String(128), nullable=False)
    system_prompt = Column(Text, nullable=False)
    user_prompt_template = Column(Text, nullable=False)
    version = Column(Integer, nullable=False, server_default="1")
    is_active = Column(Boolean, nullable=False, default=True, server_default=true())

    created_at = Column(
        TIMESTAMP(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
    updated_at = Column(
        TIMESTAMP(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )


# =========================
# Company rules (tenant addendum)
# =========================
class CompanyRule(Base):
    __tablename__ = "company_rules"

    id = Column(Integer, primary_key=True, autoincrement=True)

    tenant = Column(String(128), nullable=False, unique=True, index=True)
    rules = Column(Text, nullable=False)

    created_at = Column(
        TIMESTAMP(timezone=True),
        nullable=False,
        server_default=func.now(),
    )


# =========================
# Knowledge base entries
# =========================
class KnowledgeBase(Base):
    """
    Atomic unit of reference text that may be placed in a prompt.
    relevance_tags is a JSON list matched against the Intent's tags.
    """

    __tablename__ = "knowledge_bases"

    id = Column(Integer, primary_key=True, autoincrement=True)

    name = Column(String(255), nullable=False)
    category = Column(String(64), nullable=False, index=True)
    component = Column(String(64), nullable=True)
    content = Column(Text, nullable=False)
    relevance_tags = Column(JSON, nullable=False, default=list)
    priority = Column(String(16), nullable=False, server_default="medium")
    token_estimate = Column(Integer, nullable=False, server_default="0")
    version = Column(Integer, nullable=False, server_default="1")
    is_active = Column(Boolean, nullable=False, default=True, server_default=true())

    created_at = Column(
        TIMESTAMP(timezone=True),
        nullable=False,
        server_default=func.now(),
    )


# =========================
# Generation logs (audit, append-only)
# =========================
class GenerationLog(Base):
    """
    Raw user input is never stored here, only the normalized intent.
    """

    __tablename__ = "generation_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)

    product = Column(String(64), nullable=False, index=True)
    input_type = Column(String(32), nullable=False)
    intent = Column(JSON, nullable=True)
    template_version = Column(Integer, nullable=True)
    status = Column(String(32), nullable=False, index=True)
    artifacts = Column(JSON, nullable=True)
    artifacts_hash = Column(String(64), nullable=True)
    warnings = Column(JSON, nullable=False, default=list)
    error_category = Column(String(64), nullable=True)
    generation_time_ms = Column(Integer, nullable=False, server_default="0")
    attempts = Column(Integer, nullable=False, server_default="0")

    created_at = Column(
        TIMESTAMP(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
