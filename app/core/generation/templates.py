# app/core/generation/templates.py
"""
TEMPLATES MODULE - Read-only access to prompt templates and company rules

Purpose:
    Hand the compiler the single active template for (product, kind) and,
    when the tenant has one, its company rule text. Editing templates is
    someone else's job; this module only reads.

Stores:
    DatabaseTemplateStore  - prompt_templates / company_rules tables
    SnapshotTemplateStore  - immutable in-memory mapping, swapped atomically
"""

import logging
from types import MappingProxyType
from typing import Dict, Iterable, Mapping, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core import models
from app.core.schemas import CompanyRule, IntentKind, Product, PromptTemplate

logger = logging.getLogger(__name__)

TemplateKey = Tuple[Product, IntentKind]


# ============================================================================
# BUILT-IN TEMPLATES (seeded by the initial migration)
# ============================================================================

XFRAME5_SYSTEM_PROMPT = """You are an xFrame5 frontend code generator.
Generate exactly two sections in this order, each introduced by its marker line:

--- XML ---
(screen definition XML)
--- JS ---
(event handler JavaScript)

Rules:
- Dataset ids start with ds_, grid ids start with grid_
- Every event handler is a function named fn_<action> and is defined in the JS section
- Bind grids to datasets with link_data="<dataset id>"
- NEVER make up API endpoints or URLs; write a TODO placeholder comment instead
- Output only the two sections, no explanations"""

XFRAME5_USER_PROMPT = """Generate an xFrame5 {{kind}} screen.

Screen name: {{screen_name}}
Entity: {{entity_name}}

Datasets:
{{datasets}}

Grid columns:
{{grid_columns}}

Form fields:
{{form_fields}}

Required functions:
{{functions}}

Actions:
{{actions}}

Notes:
{{notes}}"""

SPRING_SYSTEM_PROMPT = """You are a Spring Boot + MyBatis backend code generator.
Generate these sections in order, each introduced by its marker line:

--- CONTROLLER ---
--- SERVICE ---
--- SERVICE_IMPL ---
--- DTO ---
--- MAPPER ---
--- MAPPER_XML ---

Rules:
- Controller uses @RestController and delegates to the service interface
- ServiceImpl uses @Service and implements the service interface
- Mapper is a @Mapper interface; MAPPER_XML namespace is the mapper's fully qualified name
- Use #{} parameters in MyBatis XML, never ${}
- NEVER call external URLs or services that were not given; leave a TODO placeholder instead
- Output only the sections, no explanations"""

SPRING_USER_PROMPT = """Generate a CRUD backend for entity {{entity_class}} (table {{entity_name}}).

Base package: {{package_base}}

Fields:
{{fields}}

Service methods:
{{service_methods}}

Mapper methods:
{{mapper_methods}}

Notes:
{{notes}}"""


def _default_templates() -> Tuple[PromptTemplate, ...]:
    templates = [
        PromptTemplate(
            product=Product.XFRAME5_UI,
            kind=kind,
            name=f"xframe5-{kind.value}-default",
            system_prompt=XFRAME5_SYSTEM_PROMPT,
            user_prompt_template=XFRAME5_USER_PROMPT,
            version=1,
        )
        for kind in (
            IntentKind.LIST,
            IntentKind.DETAIL,
            IntentKind.POPUP,
            IntentKind.LIST_WITH_POPUP,
        )
    ]
    templates.append(
        PromptTemplate(
            product=Product.SPRING_BACKEND,
            kind=IntentKind.CRUD,
            name="spring-crud-default",
            system_prompt=SPRING_SYSTEM_PROMPT,
            user_prompt_template=SPRING_USER_PROMPT,
            version=1,
        )
    )
    return tuple(templates)


DEFAULT_TEMPLATES: Tuple[PromptTemplate, ...] = _default_templates()


# ============================================================================
# IN-MEMORY SNAPSHOT STORE
# ============================================================================


class SnapshotTemplateStore:
    """
    Templates and rules kept in read-only mappings.

    publish() builds a new mapping and swaps the reference, so concurrent
    readers see either the old or the new set, never half of each.
    """

    def __init__(
        self,
        templates: Iterable[PromptTemplate] = (),
        rules: Iterable[CompanyRule] = (),
    ):
        self._templates: Mapping[TemplateKey, PromptTemplate] = MappingProxyType({})
        self._rules: Mapping[str, CompanyRule] = MappingProxyType({})
        self.replace(templates, rules)

    def replace(
        self,
        templates: Iterable[PromptTemplate],
        rules: Iterable[CompanyRule] = (),
    ) -> None:
        active: Dict[TemplateKey, PromptTemplate] = {}
        for template in templates:
            key = (template.product, template.kind)
            current = active.get(key)
            if current is None or template.version > current.version:
                active[key] = template
        self._templates = MappingProxyType(active)
        self._rules = MappingProxyType({rule.tenant: rule for rule in rules})

    def publish(self, template: PromptTemplate) -> None:
        """
        Activate a new template version.

        Raises:
            ValueError: version is not greater than the active one
        """
        key = (template.product, template.kind)
        current = self._templates.get(key)
        if current is not None and template.version <= current.version:
            raise ValueError(
                f"Template version must increase: {key[0].value}/{key[1].value} "
                f"is at v{current.version}, got v{template.version}"
            )
        updated = dict(self._templates)
        updated[key] = template
        self._templates = MappingProxyType(updated)

    async def get_active_template(self, product: Product, kind: IntentKind) -> Optional[PromptTemplate]:
        return self._templates.get((product, kind))

    async def get_company_rule(self, tenant: Optional[str]) -> Optional[CompanyRule]:
        if not tenant:
            return None
        return self._rules.get(tenant)


def default_template_store() -> SnapshotTemplateStore:
    return SnapshotTemplateStore(DEFAULT_TEMPLATES)


# ============================================================================
# DATABASE STORE
# ============================================================================


class DatabaseTemplateStore:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def get_active_template(self, product: Product, kind: IntentKind) -> Optional[PromptTemplate]:
        """Highest active version for the pair, or None."""
        async with self.session_factory() as session:
            stmt = (
                select(models.PromptTemplate)
                .where(
                    models.PromptTemplate.product == Product(product).value,
                    models.PromptTemplate.kind == IntentKind(kind).value,
                    models.PromptTemplate.is_active.is_(True),
                )
                .order_by(models.PromptTemplate.version.desc())
                .limit(1)
            )
            row = (await session.execute(stmt)).scalar_one_or_none()

        if row is None:
            logger.warning(f"No active template in database for {product.value}/{kind.value}")
            return None
        return PromptTemplate.model_validate(row)

    async def get_company_rule(self, tenant: Optional[str]) -> Optional[CompanyRule]:
        if not tenant:
            return None
        async with self.session_factory() as session:
            stmt = select(models.CompanyRule).where(models.CompanyRule.tenant == tenant)
            row = (await session.execute(stmt)).scalar_one_or_none()
        return CompanyRule.model_validate(row) if row is not None else None
