"""create generation tables and seed default templates

Revision ID: 20261019_generation_tables
Revises:
Create Date: 2026-10-19
"""

import json
from pathlib import Path

from alembic import op
import sqlalchemy as sa

from app.core.generation.knowledge import entry_from_mapping
from app.core.generation.templates import DEFAULT_TEMPLATES


revision = "20261019_generation_tables"
down_revision = None
branch_labels = None
depends_on = None

CORPUS_PATH = Path(__file__).resolve().parents[2] / "knowledge" / "corpus.json"


def upgrade() -> None:
    prompt_templates = op.create_table(
        "prompt_templates",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("product", sa.String(length=64), nullable=False, index=True),
        sa.Column("kind", sa.String(length=32), nullable=False),
        sa.Column("name", sa.String(length=128), nullable=False),
        sa.Column("system_prompt", sa.Text(), nullable=False),
        sa.Column("user_prompt_template", sa.Text(), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.TIMESTAMP(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.TIMESTAMP(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint("product", "kind", "version"),
    )
    op.create_table(
        "company_rules",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("tenant", sa.String(length=128), nullable=False, unique=True, index=True),
        sa.Column("rules", sa.Text(), nullable=False),
        sa.Column("created_at", sa.TIMESTAMP(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    knowledge_bases = op.create_table(
        "knowledge_bases",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("category", sa.String(length=64), nullable=False, index=True),
        sa.Column("component", sa.String(length=64), nullable=True),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column("relevance_tags", sa.JSON(), nullable=False),
        sa.Column("priority", sa.String(length=16), nullable=False, server_default="medium"),
        sa.Column("token_estimate", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.TIMESTAMP(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_table(
        "generation_logs",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("product", sa.String(length=64), nullable=False, index=True),
        sa.Column("input_type", sa.String(length=32), nullable=False),
        sa.Column("intent", sa.JSON(), nullable=True),
        sa.Column("template_version", sa.Integer(), nullable=True),
        sa.Column("status", sa.String(length=32), nullable=False, index=True),
        sa.Column("artifacts", sa.JSON(), nullable=True),
        sa.Column("artifacts_hash", sa.String(length=64), nullable=True),
        sa.Column("warnings", sa.JSON(), nullable=False),
        sa.Column("error_category", sa.String(length=64), nullable=True),
        sa.Column("generation_time_ms", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.TIMESTAMP(timezone=True), server_default=sa.func.now(), nullable=False),
    )

    op.bulk_insert(
        prompt_templates,
        [
            {
                "product": template.product.value,
                "kind": template.kind.value,
                "name": template.name,
                "system_prompt": template.system_prompt,
                "user_prompt_template": template.user_prompt_template,
                "version": template.version,
                "is_active": True,
            }
            for template in DEFAULT_TEMPLATES
        ],
    )

    # Same entries as the static fallback corpus, so a fresh database can serve requests
    if CORPUS_PATH.is_file():
        data = json.loads(CORPUS_PATH.read_text(encoding="utf-8"))
        entries = [entry_from_mapping(item) for item in data.get("entries", [])]
        if entries:
            op.bulk_insert(
                knowledge_bases,
                [
                    {
                        "name": entry.name,
                        "category": entry.category,
                        "component": entry.component,
                        "content": entry.content,
                        "relevance_tags": sorted(entry.relevance_tags),
                        "priority": entry.priority.value,
                        "token_estimate": entry.token_estimate,
                        "version": 1,
                        "is_active": True,
                    }
                    for entry in entries
                ],
            )


def downgrade() -> None:
    op.drop_table("generation_logs")
    op.drop_table("knowledge_bases")
    op.drop_table("company_rules")
    op.drop_table("prompt_templates")
