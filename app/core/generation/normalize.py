# app/core/generation/normalize.py
"""
NORMALIZE MODULE - Turn raw generation input into a canonical Intent

Purpose:
    1. Accept one of three input shapes (db schema, query + sample rows, natural language)
    2. Map column types to UI widgets with a fixed table plus naming-suffix overrides
    3. Infer display labels (comment → known-name table → mechanical humanize)
    4. Derive the Intent name deterministically as "<entity>_<kind>"

Data Flow:
    DbSchemaInput ──────────────────────────────┐
    QuerySampleInput → parse_select_columns()    ├→ columns_to_intent() → Intent
                     → infer_sample_type() ──────┘
    NaturalLanguageInput → keyword tables → Intent (no fields)

Why this matters:
    - Same input must always give the same Intent (prompts are reproducible)
    - Bad input fails here, before any knowledge lookup or model call
    - "REG_DT" declared as VARCHAR(8) should still render as a date picker
"""

import logging
import re
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional, Sequence, Tuple

from app.core.errors import NormalizationError
from app.core.generation.products import get_product_spec
from app.core.schemas import (
    Action,
    ColumnInfo,
    DataType,
    DbSchemaInput,
    FieldDescriptor,
    GenerateRequest,
    InputType,
    Intent,
    IntentKind,
    NaturalLanguageInput,
    Product,
    QuerySampleInput,
    UiType,
)

logger = logging.getLogger(__name__)


# ============================================================================
# STEP 1: COLUMN TYPE → UI TYPE
# ============================================================================

# (type names, ui type, data type). First match wins.
TYPE_TABLE: List[Tuple[Tuple[str, ...], UiType, DataType]] = [
    (("TEXT", "CLOB", "NCLOB", "LONGTEXT", "MEDIUMTEXT", "NTEXT"), UiType.TEXTAREA, DataType.STRING),
    (
        ("VARCHAR", "VARCHAR2", "NVARCHAR", "NVARCHAR2", "CHAR", "NCHAR", "CHARACTER", "STRING"),
        UiType.INPUT,
        DataType.STRING,
    ),
    (("DATE",), UiType.DATEPICKER, DataType.DATE),
    (("DATETIME", "DATETIME2", "TIMESTAMP", "TIMESTAMPTZ"), UiType.DATETIMEPICKER, DataType.DATETIME),
    (("BOOLEAN", "BOOL", "BIT"), UiType.CHECKBOX, DataType.BOOLEAN),
    (
        ("INT", "INTEGER", "BIGINT", "SMALLINT", "TINYINT", "MEDIUMINT", "SERIAL", "BIGSERIAL"),
        UiType.NUMBER,
        DataType.INTEGER,
    ),
    (("DECIMAL", "NUMERIC", "NUMBER", "FLOAT", "DOUBLE", "REAL", "MONEY"), UiType.NUMBER, DataType.DECIMAL),
    (("BLOB", "BINARY", "VARBINARY", "BYTEA", "LONGBLOB"), UiType.FILE, DataType.BINARY),
]

# Strings longer than this are edited in a text area
LARGE_TEXT_LENGTH = 500

BOOLEAN_SUFFIXES = ("_YN", "_FLAG", "_FLG")
CODE_SUFFIXES = ("_CD", "_CODE")
DATE_SUFFIXES = ("_DT", "_DATE", "_YMD")

_TYPE_PATTERN = re.compile(r"^\s*([A-Za-z0-9_]+)[^(]*(?:\(\s*(\d+)(?:\s*,\s*\d+)?\s*\))?")


def map_column_type(column_type: str) -> Tuple[UiType, DataType, Optional[int]]:
    """
    Map a database column type to (ui type, data type, max length).

    Examples:
        "VARCHAR(100)"  → (input, string, 100)
        "VARCHAR(2000)" → (textarea, string, 2000)
        "NUMBER(10,2)"  → (number, decimal, 10)
        "TIMESTAMP WITH TIME ZONE" → (datetimepicker, datetime, None)
    """
    match = _TYPE_PATTERN.match(column_type or "")
    if not match:
        return UiType.INPUT, DataType.STRING, None

    base = match.group(1).upper()
    length = int(match.group(2)) if match.group(2) else None

    for names, ui_type, data_type in TYPE_TABLE:
        if base in names:
            if data_type == DataType.STRING and length and length > LARGE_TEXT_LENGTH:
                return UiType.TEXTAREA, data_type, length
            return ui_type, data_type, length

    return UiType.INPUT, DataType.STRING, length


def apply_suffix_overrides(
    column_name: str, ui_type: UiType, data_type: DataType
) -> Tuple[UiType, DataType]:
    """
    Naming conventions beat declared types.

    Examples:
        USE_YN  CHAR(1)    → checkbox / boolean
        DEPT_CD VARCHAR(4) → combo (data type unchanged)
        REG_DT  VARCHAR(8) → datepicker / date
    """
    name = column_name.upper()
    if name.endswith(BOOLEAN_SUFFIXES):
        return UiType.CHECKBOX, DataType.BOOLEAN
    if name.endswith(CODE_SUFFIXES):
        return UiType.COMBO, data_type
    if name.endswith(DATE_SUFFIXES):
        if data_type in (DataType.DATE, DataType.DATETIME):
            return UiType.DATEPICKER, data_type
        return UiType.DATEPICKER, DataType.DATE
    return ui_type, data_type


# ============================================================================
# STEP 2: LABELS
# ============================================================================

# column name → (korean, english)
KNOWN_LABELS: Dict[str, Tuple[str, str]] = {
    "id": ("ID", "ID"),
    "seq": ("순번", "Seq"),
    "no": ("번호", "No"),
    "name": ("이름", "Name"),
    "nm": ("이름", "Name"),
    "title": ("제목", "Title"),
    "content": ("내용", "Content"),
    "contents": ("내용", "Content"),
    "description": ("설명", "Description"),
    "desc": ("설명", "Description"),
    "email": ("이메일", "Email"),
    "phone": ("전화번호", "Phone"),
    "tel": ("전화번호", "Phone"),
    "tel_no": ("전화번호", "Phone"),
    "mobile": ("휴대폰", "Mobile"),
    "address": ("주소", "Address"),
    "addr": ("주소", "Address"),
    "zip_code": ("우편번호", "Zip Code"),
    "status": ("상태", "Status"),
    "stat_cd": ("상태", "Status"),
    "type": ("유형", "Type"),
    "amount": ("금액", "Amount"),
    "amt": ("금액", "Amount"),
    "price": ("가격", "Price"),
    "qty": ("수량", "Quantity"),
    "quantity": ("수량", "Quantity"),
    "remark": ("비고", "Remark"),
    "rmk": ("비고", "Remark"),
    "memo": ("메모", "Memo"),
    "sort_order": ("정렬순서", "Sort Order"),
    "sort_seq": ("정렬순서", "Sort Order"),
    "use_yn": ("사용여부", "In Use"),
    "del_yn": ("삭제여부", "Deleted"),
    "created_at": ("등록일", "Created At"),
    "reg_dt": ("등록일", "Created At"),
    "reg_date": ("등록일", "Created At"),
    "created_by": ("등록자", "Created By"),
    "reg_id": ("등록자", "Created By"),
    "updated_at": ("수정일", "Updated At"),
    "upd_dt": ("수정일", "Updated At"),
    "mod_dt": ("수정일", "Updated At"),
    "updated_by": ("수정자", "Updated By"),
    "upd_id": ("수정자", "Updated By"),
    "user_id": ("사용자ID", "User ID"),
    "user_nm": ("사용자명", "User Name"),
    "dept_cd": ("부서코드", "Department Code"),
    "dept_nm": ("부서명", "Department"),
    "start_dt": ("시작일", "Start Date"),
    "end_dt": ("종료일", "End Date"),
}


def humanize(column_name: str) -> str:
    """CUST_NAME → "Cust Name", orderDate stays one word: "Orderdate"."""
    words = [w for w in re.split(r"[_\-\s]+", column_name.strip()) if w]
    return " ".join(word.capitalize() for word in words)


def infer_label(column_name: str, comment: Optional[str] = None, language: str = "ko") -> str:
    """
    Pick a display label.

    Order:
        1. Column comment (authors know best)
        2. KNOWN_LABELS (language "en" picks the English column)
        3. humanize()
    """
    if comment and comment.strip():
        return comment.strip()

    known = KNOWN_LABELS.get(column_name.strip().lower())
    if known:
        return known[1] if language == "en" else known[0]

    return humanize(column_name)


# ============================================================================
# STEP 3: KIND AND ACTIONS
# ============================================================================

DEFAULT_ACTIONS: Dict[IntentKind, Tuple[Action, ...]] = {
    IntentKind.LIST: (Action.SEARCH, Action.ADD, Action.DELETE),
    IntentKind.DETAIL: (Action.SAVE, Action.DELETE),
    IntentKind.POPUP: (Action.SAVE, Action.CLOSE),
    IntentKind.LIST_WITH_POPUP: (Action.SEARCH, Action.ADD, Action.DELETE, Action.OPEN_POPUP),
    IntentKind.CRUD: (Action.CREATE, Action.READ, Action.READ_LIST, Action.UPDATE, Action.DELETE),
}


def default_actions(kind: IntentKind) -> List[Action]:
    return list(DEFAULT_ACTIONS[kind])


def resolve_kind(product: Product, requested: Optional[IntentKind]) -> IntentKind:
    """Requested kind if the product supports it, the product default when none was given."""
    spec = get_product_spec(product)
    if requested is None:
        return spec.default_kind
    if requested not in spec.kinds:
        allowed = ", ".join(k.value for k in spec.kinds)
        raise NormalizationError(
            f"Kind '{requested.value}' is not available for {spec.product.value} (allowed: {allowed})"
        )
    return requested


def entity_identifier(table: str) -> str:
    """
    "dbo.CUSTOMER" → "customer", "[Order Item]" → "order_item"
    """
    name = table.strip().strip('"`[]')
    name = name.split(".")[-1].strip('"`[]')
    name = re.sub(r"[^0-9A-Za-z_]+", "_", name).strip("_").lower()
    if not name:
        raise NormalizationError(f"Cannot derive an entity name from '{table}'")
    return name


# ============================================================================
# STEP 4: COLUMNS → INTENT (shared by schema and query paths)
# ============================================================================


def build_field(column: ColumnInfo, primary_key: bool, language: str = "ko") -> FieldDescriptor:
    ui_type, data_type, max_length = map_column_type(column.column_type)
    ui_type, data_type = apply_suffix_overrides(column.name, ui_type, data_type)

    if primary_key:
        ui_type = UiType.HIDDEN

    return FieldDescriptor(
        name=column.name,
        label=infer_label(column.name, column.comment, language),
        ui_type=ui_type,
        data_type=data_type,
        required=primary_key or not column.nullable,
        read_only=primary_key,
        primary_key=primary_key,
        max_length=max_length,
    )


def columns_to_intent(
    table: str,
    columns: Sequence[ColumnInfo],
    product: Product,
    kind: Optional[IntentKind],
    input_type: InputType,
    primary_keys: Sequence[str] = (),
    language: str = "ko",
) -> Intent:
    """
    Build an Intent with exactly one field per column, in input order.

    Raises:
        NormalizationError: empty column list, duplicate column, unsupported kind
    """
    if not columns:
        raise NormalizationError("Column list is empty")

    seen = set()
    for column in columns:
        key = column.name.strip().lower()
        if key in seen:
            raise NormalizationError(f"Duplicate column name: {column.name}")
        seen.add(key)

    resolved_kind = resolve_kind(product, kind)
    entity = entity_identifier(table)
    pk_names = {name.strip().lower() for name in primary_keys}

    fields = [
        build_field(column, column.pk or column.name.strip().lower() in pk_names, language)
        for column in columns
    ]

    return Intent(
        name=f"{entity}_{resolved_kind.value}",
        product=product,
        kind=resolved_kind,
        entity=entity,
        input_type=input_type,
        fields=fields,
        actions=default_actions(resolved_kind),
    )


def normalize_schema(
    schema: DbSchemaInput,
    product: Product,
    kind: Optional[IntentKind] = None,
    language: str = "ko",
) -> Intent:
    return columns_to_intent(
        table=schema.table,
        columns=schema.columns,
        product=product,
        kind=kind or schema.kind,
        input_type=InputType.DB_SCHEMA,
        primary_keys=schema.primary_keys,
        language=language,
    )


# ============================================================================
# STEP 5: QUERY + SAMPLE ROWS
# ============================================================================

_COMMENT_PATTERN = re.compile(r"--[^\n]*|/\*.*?\*/", re.DOTALL)
_TOKEN_PATTERN = re.compile(r"'(?:[^']|'')*'|\(|\)|\bfrom\b", re.IGNORECASE)
_ALIAS_AS_PATTERN = re.compile(r"\s+as\s+[\"`\[]?(\w+)[\"`\]]?\s*$", re.IGNORECASE)
_ALIAS_BARE_PATTERN = re.compile(r"[\w)\]\"`]\s+[\"`\[]?([A-Za-z_]\w*)[\"`\]]?$")
_TABLE_PATTERN = re.compile(r"^\s*([\w.\"`\[\]]+)")

# Words that can end an expression without naming it (CASE ... END, x IS NULL)
_NON_ALIAS_WORDS = {"end", "null", "and", "or", "not", "then", "else", "when", "is", "in", "like", "between"}

SAMPLE_DATE_FORMATS = ["%Y-%m-%d", "%Y/%m/%d", "%Y%m%d"]


def _split_top_level(text: str) -> List[str]:
    """Split on commas that are not inside parentheses or quotes."""
    parts, depth, quoted, current = [], 0, False, []
    for char in text:
        if char == "'":
            quoted = not quoted
        elif not quoted and char == "(":
            depth += 1
        elif not quoted and char == ")":
            depth -= 1
        elif not quoted and depth == 0 and char == ",":
            parts.append("".join(current))
            current = []
            continue
        current.append(char)
    parts.append("".join(current))
    return [part.strip() for part in parts if part.strip()]


def _find_top_level_from(text: str) -> int:
    depth = 0
    for match in _TOKEN_PATTERN.finditer(text):
        token = match.group(0)
        if token == "(":
            depth += 1
        elif token == ")":
            depth -= 1
        elif token.lower() == "from" and depth == 0:
            return match.start()
    return -1


def _column_name(expression: str) -> str:
    alias = _ALIAS_AS_PATTERN.search(expression)
    if alias:
        return alias.group(1)

    bare = _ALIAS_BARE_PATTERN.search(expression)
    if bare and not re.fullmatch(r"[\w.\"`\[\]]+", expression):
        if bare.group(1).lower() not in _NON_ALIAS_WORDS:
            return bare.group(1)

    identifier = expression.split(".")[-1].strip('"`[] ')
    if not re.fullmatch(r"\w+", identifier):
        raise NormalizationError(f"Cannot name select expression '{expression}', add an alias")
    return identifier


def parse_select_columns(query: str) -> Tuple[str, List[str]]:
    """
    Extract (table, column expressions) from a single SELECT statement.

    Examples:
        "SELECT c.id, c.name AS cust_name FROM customer c" → ("customer", ["id", "cust_name"])
        "SELECT * FROM customer"                           → ("customer", ["*"])

    Raises:
        NormalizationError: empty text, more than one statement, not a SELECT, no FROM
    """
    text = _COMMENT_PATTERN.sub(" ", query or "").strip()
    text = text.rstrip(";").strip()
    if not text:
        raise NormalizationError("Query text is empty")
    if ";" in text:
        raise NormalizationError("Only a single SELECT statement is accepted")
    if not re.match(r"select\b", text, re.IGNORECASE):
        raise NormalizationError("Query must be a SELECT statement")

    from_pos = _find_top_level_from(text)
    if from_pos < 0:
        raise NormalizationError("Query has no FROM clause")

    select_list = text[len("select"):from_pos].strip()
    select_list = re.sub(r"^(distinct|all)\s+", "", select_list, flags=re.IGNORECASE)
    select_list = re.sub(r"^top\s+\d+\s+", "", select_list, flags=re.IGNORECASE)

    table_match = _TABLE_PATTERN.match(text[from_pos + len("from"):])
    if not table_match or table_match.group(1).startswith("("):
        raise NormalizationError("Query must select from a named table")

    columns = []
    for expression in _split_top_level(select_list):
        if expression == "*" or expression.endswith(".*"):
            columns.append("*")
        else:
            columns.append(_column_name(expression))

    if not columns:
        raise NormalizationError("Query selects no columns")

    return table_match.group(1), columns


def _is_integer(value: Any) -> bool:
    if isinstance(value, bool):
        return False
    if isinstance(value, int):
        return True
    return isinstance(value, str) and re.fullmatch(r"[+-]?\d+", value.strip()) is not None


def _is_decimal(value: Any) -> bool:
    if isinstance(value, bool):
        return False
    if isinstance(value, (int, float)):
        return True
    if not isinstance(value, str):
        return False
    try:
        return Decimal(value.strip().replace(",", "")).is_finite()
    except InvalidOperation:
        return False


def _is_date(value: Any) -> bool:
    if not isinstance(value, str):
        return False
    for fmt in SAMPLE_DATE_FORMATS:
        try:
            datetime.strptime(value.strip(), fmt)
            return True
        except ValueError:
            continue
    return False


# Fixed priority: the first parser that accepts every sample wins
SAMPLE_PARSERS = [
    ("INTEGER", _is_integer),
    ("DECIMAL", _is_decimal),
    ("DATE", _is_date),
]


def infer_sample_type(values: Sequence[Any]) -> str:
    """
    Guess a column type from sample values.

    Examples:
        ["1", "2", 3]          → "INTEGER"
        ["1.5", 2]             → "DECIMAL"
        ["2025-01-15"]         → "DATE"
        ["abc", None]          → "VARCHAR"
        []                     → "VARCHAR"
    """
    present = [v for v in values if v is not None and str(v).strip() != ""]
    if not present:
        return "VARCHAR"
    for type_name, accepts in SAMPLE_PARSERS:
        if all(accepts(v) for v in present):
            return type_name
    return "VARCHAR"


def _sample_values(rows: Sequence[Any], column: str, position: int) -> List[Any]:
    values = []
    for row in rows:
        if isinstance(row, dict):
            lowered = {str(k).lower(): v for k, v in row.items()}
            values.append(lowered.get(column.lower()))
        elif isinstance(row, (list, tuple)) and position < len(row):
            values.append(row[position])
    return values


def normalize_query_sample(
    sample: QuerySampleInput,
    product: Product,
    kind: Optional[IntentKind] = None,
    language: str = "ko",
) -> Intent:
    table, names = parse_select_columns(sample.query)

    if "*" in names:
        first = sample.sample_rows[0] if sample.sample_rows else None
        if len(names) != 1 or not isinstance(first, dict) or not first:
            raise NormalizationError("SELECT * needs sample rows with named columns")
        names = [str(key) for key in first.keys()]

    columns = [
        ColumnInfo(
            name=name,
            column_type=infer_sample_type(_sample_values(sample.sample_rows, name, position)),
        )
        for position, name in enumerate(names)
    ]

    return columns_to_intent(
        table=table,
        columns=columns,
        product=product,
        kind=kind or sample.kind,
        input_type=InputType.QUERY_SAMPLE,
        language=language,
    )


# ============================================================================
# STEP 6: NATURAL LANGUAGE (heuristic, never fails on non-empty text)
# ============================================================================

# (keywords, canonical entity). Korean and English.
ENTITY_KEYWORDS: List[Tuple[Tuple[str, ...], str]] = [
    (("회원", "member", "user", "사용자"), "member"),
    (("주문", "order"), "order"),
    (("상품", "제품", "product", "item"), "product"),
    (("게시판", "게시글", "board", "post"), "board"),
    (("고객", "customer", "client"), "customer"),
    (("직원", "사원", "employee", "staff"), "employee"),
    (("부서", "department", "dept"), "department"),
    (("프로젝트", "project"), "project"),
    (("작업", "업무", "task"), "task"),
    (("일정", "스케줄", "schedule", "calendar"), "schedule"),
    (("예약", "reservation", "booking"), "reservation"),
    (("결제", "payment"), "payment"),
    (("송장", "청구서", "invoice"), "invoice"),
    (("재고", "inventory", "stock"), "inventory"),
    (("카테고리", "분류", "category"), "category"),
    (("공지", "notice", "announcement"), "notice"),
    (("문의", "inquiry", "question"), "inquiry"),
    (("코드", "code"), "code"),
    (("설정", "setting", "config"), "setting"),
    (("로그", "이력", "log", "history"), "log"),
    (("보고서", "리포트", "report"), "report"),
    (("파일", "첨부", "file", "attachment"), "file"),
    (("메뉴", "menu"), "menu"),
    (("권한", "역할", "role", "permission"), "role"),
    (("회사", "company"), "company"),
]

# Checked in order; more specific phrases first
KIND_KEYWORDS: List[Tuple[Tuple[str, ...], IntentKind]] = [
    (("with popup", "list and popup", "목록과 팝업", "팝업 포함"), IntentKind.LIST_WITH_POPUP),
    (("popup", "pop-up", "modal", "팝업"), IntentKind.POPUP),
    (("detail", "form", "edit", "상세", "등록", "수정", "입력"), IntentKind.DETAIL),
    (("list", "grid", "search", "목록", "조회", "리스트"), IntentKind.LIST),
    (("crud", "api", "rest", "backend", "service"), IntentKind.CRUD),
]

_PHRASE_PATTERN = re.compile(r"\b([a-z][a-z0-9_]*)\s+(?:list|screen|management|page|form)\b")
_PHRASE_STOPWORDS = {"a", "an", "the", "my", "new", "simple", "basic", "main"}


def _keyword_position(text: str, keyword: str) -> int:
    # English keywords must start a word ("catalog" is not "log"), Korean ones attach to particles
    if keyword.isascii():
        match = re.search(rf"\b{re.escape(keyword)}", text)
        return match.start() if match else -1
    return text.find(keyword)


def match_entity(text: str) -> Optional[str]:
    """Earliest keyword occurrence wins; ties go to table order."""
    lowered = text.lower()
    best: Optional[Tuple[int, int, str]] = None
    for order, (keywords, entity) in enumerate(ENTITY_KEYWORDS):
        for keyword in keywords:
            position = _keyword_position(lowered, keyword)
            if position >= 0 and (best is None or (position, order) < best[:2]):
                best = (position, order, entity)
    if best:
        return best[2]

    for match in _PHRASE_PATTERN.finditer(lowered):
        word = match.group(1)
        if word not in _PHRASE_STOPWORDS:
            return word
    return None


def match_kind(text: str, product: Product) -> Optional[IntentKind]:
    allowed = get_product_spec(product).kinds
    lowered = text.lower()
    for keywords, kind in KIND_KEYWORDS:
        if kind in allowed and any(_keyword_position(lowered, k) >= 0 for k in keywords):
            return kind
    return None


def normalize_natural_language(
    text_input: NaturalLanguageInput,
    product: Product,
    kind: Optional[IntentKind] = None,
) -> Intent:
    """
    Keyword matching only. Unknown text degrades to the product's fallback entity
    and default kind; fields are left for the model to propose.

    Raises:
        NormalizationError: description is empty or whitespace
    """
    description = (text_input.description or "").strip()
    if not description:
        raise NormalizationError("Description is empty")

    spec = get_product_spec(product)
    requested = kind or text_input.kind
    if requested is not None and requested not in spec.kinds:
        logger.warning(
            f"Ignoring kind '{requested.value}' for {spec.product.value}, using keywords instead"
        )
        requested = None

    resolved_kind = requested or match_kind(description, product) or spec.default_kind
    entity = match_entity(description) or spec.fallback_entity

    return Intent(
        name=f"{entity}_{resolved_kind.value}",
        product=product,
        kind=resolved_kind,
        entity=entity,
        input_type=InputType.NATURAL_LANGUAGE,
        fields=[],
        actions=default_actions(resolved_kind),
        notes=description,
    )


# ============================================================================
# STEP 7: DISPATCH
# ============================================================================


def normalize_input(request: GenerateRequest) -> Intent:
    """
    Normalize any request input.

    Args:
        request: Validated inbound request

    Returns:
        Intent for the request's product

    Example:
        intent = normalize_input(request)
        intent.name  # "customer_list"
    """
    data = request.input
    language = request.options.language

    if isinstance(data, DbSchemaInput):
        return normalize_schema(data, request.product, language=language)
    if isinstance(data, QuerySampleInput):
        return normalize_query_sample(data, request.product, language=language)
    if isinstance(data, NaturalLanguageInput):
        return normalize_natural_language(data, request.product)

    raise NormalizationError(f"Unsupported input type: {type(data).__name__}")
