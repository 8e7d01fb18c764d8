from datetime import datetime
from typing import Annotated, Optional, List, Dict, Any, Union, Literal, FrozenSet, Tuple
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, model_validator


# =========================
# Enums
# =========================
class Product(str, Enum):
    XFRAME5_UI = "xframe5-ui"
    SPRING_BACKEND = "spring-backend"


class IntentKind(str, Enum):
    LIST = "list"
    DETAIL = "detail"
    POPUP = "popup"
    LIST_WITH_POPUP = "list_with_popup"
    CRUD = "crud"


class InputType(str, Enum):
    DB_SCHEMA = "db_schema"
    QUERY_SAMPLE = "query_sample"
    NATURAL_LANGUAGE = "natural_language"


class UiType(str, Enum):
    INPUT = "input"
    TEXTAREA = "textarea"
    NUMBER = "number"
    DATEPICKER = "datepicker"
    DATETIMEPICKER = "datetimepicker"
    CHECKBOX = "checkbox"
    COMBO = "combo"
    HIDDEN = "hidden"
    FILE = "file"


class DataType(str, Enum):
    STRING = "string"
    INTEGER = "integer"
    DECIMAL = "decimal"
    DATE = "date"
    DATETIME = "datetime"
    BOOLEAN = "boolean"
    BINARY = "binary"


class Action(str, Enum):
    SEARCH = "search"
    ADD = "add"
    SAVE = "save"
    DELETE = "delete"
    CLOSE = "close"
    OPEN_POPUP = "open_popup"
    EXPORT = "export"
    CREATE = "create"
    READ = "read"
    READ_LIST = "read_list"
    UPDATE = "update"


class Severity(str, Enum):
    ERROR = "error"
    WARNING = "warning"
    INFO = "info"
    SUGGESTION = "suggestion"


class GenerationStatus(str, Enum):
    SUCCESS = "success"
    PARTIAL_SUCCESS = "partial_success"
    FAILED = "failed"


class KnowledgePriority(str, Enum):
    ESSENTIAL = "essential"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @property
    def rank(self) -> int:
        """Lower rank sorts first (most essential)."""
        return _PRIORITY_RANK[self]


_PRIORITY_RANK = {
    KnowledgePriority.ESSENTIAL: 0,
    KnowledgePriority.HIGH: 1,
    KnowledgePriority.MEDIUM: 2,
    KnowledgePriority.LOW: 3,
}


# =========================
# INBOUND REQUEST
# =========================
class ColumnInfo(BaseModel):
    name: str = Field(min_length=1)
    column_type: str = "VARCHAR"
    nullable: bool = True
    pk: bool = False
    comment: Optional[str] = None


class DbSchemaInput(BaseModel):
    type: Literal["db_schema"] = "db_schema"
    table: str = Field(min_length=1)
    columns: List[ColumnInfo] = []
    primary_keys: List[str] = []
    kind: Optional[IntentKind] = None


class QuerySampleInput(BaseModel):
    type: Literal["query_sample"] = "query_sample"
    query: str
    # Rows are either {column: value} objects or positional lists
    sample_rows: List[Union[Dict[str, Any], List[Any]]] = []
    kind: Optional[IntentKind] = None


class NaturalLanguageInput(BaseModel):
    type: Literal["natural_language"] = "natural_language"
    description: str
    kind: Optional[IntentKind] = None


GenerateInput = Annotated[
    Union[DbSchemaInput, QuerySampleInput, NaturalLanguageInput],
    Field(discriminator="type"),
]


class GenerateOptions(BaseModel):
    language: str = "ko"
    focus_tags: List[str] = []

    model_config = ConfigDict(extra="forbid")


class RequestContext(BaseModel):
    tenant: Optional[str] = None
    project: Optional[str] = None
    output_targets: List[str] = []

    model_config = ConfigDict(extra="forbid")


class GenerateRequest(BaseModel):
    """Only input data and context. Model choice, sampling and prompts are never accepted."""

    product: Product
    input: GenerateInput
    options: GenerateOptions = Field(default_factory=GenerateOptions)
    context: RequestContext = Field(default_factory=RequestContext)

    model_config = ConfigDict(extra="forbid")


# =========================
# OUTBOUND RESPONSE
# =========================
class ResponseMeta(BaseModel):
    generator: str
    timestamp: datetime
    elapsed_ms: int


class GenerateResponse(BaseModel):
    status: GenerationStatus
    artifacts: Dict[str, str] = {}
    filenames: Dict[str, str] = {}
    warnings: List[str] = []
    error: Optional[str] = None
    meta: ResponseMeta


class ProductInfo(BaseModel):
    id: Product
    name: str
    description: str
    generator: str
    kinds: List[IntentKind]
    default_kind: IntentKind
    input_types: List[InputType]
    output_types: List[str]


# =========================
# INTENT
# =========================
class FieldDescriptor(BaseModel):
    name: str
    label: str
    ui_type: UiType
    data_type: DataType
    required: bool = False
    read_only: bool = False
    primary_key: bool = False
    max_length: Optional[int] = None


_TABLE_PREFIXES = ("TBL_", "TB_", "T_")

_SERVICE_METHODS = {
    Action.CREATE: "create{}",
    Action.READ: "get{}ById",
    Action.READ_LIST: "get{}List",
    Action.UPDATE: "update{}",
    Action.DELETE: "delete{}",
}

_MAPPER_METHODS = {
    Action.CREATE: "insert",
    Action.READ: "selectById",
    Action.READ_LIST: "selectList",
    Action.UPDATE: "update",
    Action.DELETE: "delete",
}


class Intent(BaseModel):
    """Canonical description of what to generate. Built only by the normalizer."""

    name: str
    product: Product
    kind: IntentKind
    entity: str
    input_type: InputType
    fields: List[FieldDescriptor] = []
    actions: List[Action] = []
    # Free text from natural-language input. Reaches the prompt, never the audit log.
    notes: Optional[str] = None

    @model_validator(mode="after")
    def check_unique_field_names(self) -> "Intent":
        seen = set()
        for field in self.fields:
            if field.name in seen:
                raise ValueError(f"Duplicate field name: {field.name}")
            seen.add(field.name)
        return self

    @property
    def dataset_id(self) -> str:
        return f"ds_{self.entity}"

    @property
    def grid_id(self) -> str:
        return f"grid_{self.entity}"

    @property
    def entity_class(self) -> str:
        """TB_MEMBER_INFO -> MemberInfo"""
        name = self.entity.upper()
        for prefix in _TABLE_PREFIXES:
            if name.startswith(prefix) and len(name) > len(prefix):
                name = name[len(prefix):]
                break
        return "".join(part.capitalize() for part in name.split("_") if part)

    @property
    def function_names(self) -> List[str]:
        return [f"fn_{action.value}" for action in self.actions]

    @property
    def service_methods(self) -> List[str]:
        return [
            _SERVICE_METHODS[action].format(self.entity_class)
            for action in self.actions
            if action in _SERVICE_METHODS
        ]

    @property
    def mapper_methods(self) -> List[str]:
        return [_MAPPER_METHODS[action] for action in self.actions if action in _MAPPER_METHODS]

    def audit_dump(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", exclude={"notes"})


# =========================
# KNOWLEDGE / TEMPLATES / RULES
# =========================
class KnowledgeEntry(BaseModel):
    id: int
    name: str
    category: str
    component: Optional[str] = None
    relevance_tags: FrozenSet[str] = frozenset()
    priority: KnowledgePriority = KnowledgePriority.MEDIUM
    token_estimate: int = Field(ge=0)
    content: str

    model_config = ConfigDict(frozen=True, from_attributes=True)


class KnowledgeSelection(BaseModel):
    entries: Tuple[KnowledgeEntry, ...] = ()
    total_tokens: int = 0
    source: str = "primary"

    model_config = ConfigDict(frozen=True)

    @property
    def ids(self) -> List[int]:
        return [entry.id for entry in self.entries]


class PromptTemplate(BaseModel):
    product: Product
    kind: IntentKind
    name: str
    system_prompt: str
    user_prompt_template: str
    version: int = Field(ge=1)

    model_config = ConfigDict(frozen=True, from_attributes=True)


class CompanyRule(BaseModel):
    tenant: str
    rules: str

    model_config = ConfigDict(frozen=True, from_attributes=True)


class CompiledPrompt(BaseModel):
    system: str
    user: str
    template_version: int
    knowledge_ids: List[int] = []
    knowledge_tokens: int = 0
    warnings: List[str] = []

    def full_text(self) -> str:
        return f"{self.system}\n\n{self.user}"


# =========================
# VALIDATION
# =========================
class Finding(BaseModel):
    severity: Severity
    category: str
    message: str
    locator: Optional[str] = None

    def describe(self) -> str:
        where = f" [{self.locator}]" if self.locator else ""
        return f"{self.severity.value}: {self.message}{where}"


class ValidationResult(BaseModel):
    findings: List[Finding] = []

    def add(
        self,
        severity: Severity,
        category: str,
        message: str,
        locator: Optional[str] = None,
    ) -> None:
        self.findings.append(
            Finding(severity=severity, category=category, message=message, locator=locator)
        )

    @property
    def has_errors(self) -> bool:
        return any(f.severity == Severity.ERROR for f in self.findings)

    def errors(self) -> List[Finding]:
        return [f for f in self.findings if f.severity == Severity.ERROR]

    def by_category(self, category: str) -> List[Finding]:
        return [f for f in self.findings if f.category == category]

    def warnings(self) -> List[str]:
        """Errors and warnings rendered for the response; info/suggestions stay internal."""
        return [
            f.describe()
            for f in self.findings
            if f.severity in (Severity.ERROR, Severity.WARNING)
        ]


class GenerationArtifacts(BaseModel):
    slots: Dict[str, str] = {}
    filenames: Dict[str, str] = {}

    @property
    def is_empty(self) -> bool:
        return not any(text.strip() for text in self.slots.values())


# =========================
# AUDIT
# =========================
class AuditRecord(BaseModel):
    product: Product
    input_type: InputType
    intent: Optional[Dict[str, Any]] = None
    template_version: Optional[int] = None
    status: GenerationStatus
    artifacts: Optional[Dict[str, str]] = None
    artifacts_hash: Optional[str] = None
    warnings: List[str] = []
    error_category: Optional[str] = None
    elapsed_ms: int = 0
    attempts: int = 0
    created_at: datetime
