# app/core/generation/validate.py
"""
VALIDATE MODULE - Decide whether model output can be trusted as code

Purpose:
    1. Split raw model text into named artifact slots using section markers
    2. Parse markup slots as XML trees
    3. Check naming conventions and required functions for the Intent's actions
    4. Check cross-artifact references (script ↔ markup, controller ↔ service ↔ mapper)
    5. Refuse invented endpoints: every URL literal in code needs a TODO-style marker
    6. Flag xFrame5 method calls the runtime does not provide

Data Flow:
    raw text → split_sections() → {slot: text}
                                     ↓
             structural checks per slot → product checks → fabrication scan
                                     ↓
             GenerationArtifacts + ValidationResult → determine_status()

Findings never raise. The orchestrator decides what an error finding means
(regenerate once, then partial_success).
"""

import logging
import re
import xml.etree.ElementTree as ET
from typing import Callable, Dict, List, Optional, Set, Tuple

from app.core.generation.products import SLOT_CODE, ProductSpec, get_product_spec
from app.core.schemas import (
    GenerationArtifacts,
    GenerationStatus,
    Intent,
    IntentKind,
    Product,
    Severity,
    ValidationResult,
)

logger = logging.getLogger(__name__)


# Finding categories
MISSING_SLOT = "missing_slot"
MARKUP = "markup"
NAMING = "naming"
REQUIRED_FUNCTION = "required_function"
CROSS_REFERENCE = "cross_reference"
FABRICATION = "fabrication"
UNKNOWN_API = "unknown_api"
STRUCTURE = "structure"
SECURITY = "security"
STYLE = "style"


# ============================================================================
# STEP 1: SPLIT RAW TEXT INTO SLOTS
# ============================================================================

MARKER_LINE = re.compile(
    r"^[ \t]*-{3,}[ \t]*([A-Za-z][A-Za-z0-9_ ]*?)[ \t]*-{3,}[ \t]*$", re.MULTILINE
)
FENCE_BLOCK = re.compile(r"```[ \t]*([A-Za-z0-9_+-]*)[ \t]*\r?\n(.*?)```", re.DOTALL)


def clean_section(text: str) -> str:
    """Drop surrounding prose and code fences; keep the first fenced block if there is one."""
    fenced = FENCE_BLOCK.search(text)
    if fenced:
        return fenced.group(2).strip()
    return text.strip().strip("`").strip()


def split_sections(raw: str, spec: ProductSpec) -> Dict[str, str]:
    """
    Cut raw output at marker lines ("--- XML ---", "--- JS ---", ...).

    Unknown markers still end the previous section but are otherwise ignored.
    The first occurrence of a slot wins. Output without any markers is read
    from fenced code blocks tagged with a slot's language instead.
    """
    markers = list(MARKER_LINE.finditer(raw or ""))
    if not markers:
        return _split_by_fences(raw or "", spec)

    sections: Dict[str, str] = {}
    for index, marker in enumerate(markers):
        end = markers[index + 1].start() if index + 1 < len(markers) else len(raw)
        slot = spec.slot_for_marker(marker.group(1))
        if slot is None:
            logger.debug(f"Ignoring unknown section marker '{marker.group(1)}'")
            continue
        if slot.name not in sections:
            sections[slot.name] = clean_section(raw[marker.end():end])
    return sections


def _split_by_fences(raw: str, spec: ProductSpec) -> Dict[str, str]:
    sections: Dict[str, str] = {}
    for block in FENCE_BLOCK.finditer(raw):
        slot = spec.slot_for_fence(block.group(1))
        if slot is not None and slot.name not in sections:
            sections[slot.name] = block.group(2).strip()
    return sections


# ============================================================================
# STEP 2: MARKUP PARSING
# ============================================================================

_XML_DECLARATION = re.compile(r"^\s*<\?xml[^>]*\?>", re.IGNORECASE)
_DOCTYPE = re.compile(r"<!DOCTYPE[^>\[]*(?:\[.*?\])?\s*>", re.IGNORECASE | re.DOTALL)


def _blank_out(match: re.Match) -> str:
    # Keep line numbers stable for error locators
    return "\n" * match.group(0).count("\n")


def parse_markup(text: str) -> Tuple[Optional[ET.Element], Optional[str]]:
    """
    Parse an XML document or fragment.

    Returns:
        (root, None) on success, (None, "line N, column M: reason") on failure.
        The root is a synthetic <fragment> wrapping whatever the text contained.
    """
    body = _XML_DECLARATION.sub(_blank_out, text, count=1)
    body = _DOCTYPE.sub(_blank_out, body, count=1)
    try:
        return ET.fromstring(f"<fragment>{body}</fragment>"), None
    except ET.ParseError as e:
        line, column = e.position
        reason = str(e).split(":")[0]
        return None, f"line {line}, column {column}: {reason}"


def _local_tag(element: ET.Element) -> str:
    tag = element.tag if isinstance(element.tag, str) else ""
    return tag.rsplit("}", 1)[-1].lower()


def _line_of(text: str, position: int) -> int:
    return text.count("\n", 0, position) + 1


# ============================================================================
# STEP 3: FABRICATION POLICY (all code slots)
# ============================================================================

URL_LITERAL = re.compile(r"\b(?:https?|wss?)://[^\s'\"`<>)]+", re.IGNORECASE)
RELATIVE_ENDPOINT_LITERAL = re.compile(
    r"[\"'`](/(?:api|rest|svc|service|services)/[^\"'`\s]*)[\"'`]", re.IGNORECASE
)
PLACEHOLDER_MARKER = re.compile(r"\b(?:TODO|FIXME|PLACEHOLDER)\b", re.IGNORECASE)


def check_fabrication(slot_name: str, text: str, relative_endpoints: bool, result: ValidationResult) -> None:
    """
    Every endpoint-looking literal needs a TODO/FIXME/PLACEHOLDER marker on
    its own line or an adjacent one. One error per unmarked literal.
    """
    lines = text.splitlines()
    for index, line in enumerate(lines):
        literals = [m.group(0) for m in URL_LITERAL.finditer(line)]
        if relative_endpoints:
            literals.extend(m.group(1) for m in RELATIVE_ENDPOINT_LITERAL.finditer(line))
        if not literals:
            continue

        window = lines[max(0, index - 1): index + 2]
        if any(PLACEHOLDER_MARKER.search(nearby) for nearby in window):
            continue

        for literal in literals:
            result.add(
                Severity.ERROR,
                FABRICATION,
                f"Endpoint '{literal}' in {slot_name} is not marked as a placeholder "
                f"(add a TODO comment or remove it)",
                f"{slot_name}:{index + 1}",
            )


# Methods the xFrame5 runtime provides on screens, datasets, grids and controls.
# Compared case-insensitively, so addRow and addrow both match.
XFRAME5_API_METHODS = frozenset(
    name.lower()
    for name in (
        # dataset
        "load", "save", "search", "transaction", "submit", "clear", "cleardata", "reset",
        "addrow", "insertrow", "deleterow", "copyrow", "moverow", "getrowcount", "getmaxrow",
        "getpos", "setpos", "getrowtype", "setrowtype", "getcolumn", "setcolumn",
        "getdata", "setdata", "getitemtext", "setitemtext", "filter", "sort",
        "getselectedindex", "setselectedindex",
        # grid
        "getselectedrow", "setselectedrow", "getcellvalue", "setcellvalue", "refresh",
        "getcheckedrows", "setcheckedrow", "checkall", "uncheckall",
        # screen / popup
        "loadpopup", "closepopup", "getpopupdata", "setpopupdata", "close", "alert", "confirm",
        # controls
        "getvalue", "setvalue", "gettext", "settext", "setenabled", "setvisible", "setreadonly",
        "focus", "blur",
    )
)
# Receivers whose methods belong to the xFrame5 runtime
SCREEN_RECEIVERS = {"screen", "this"}
COMPONENT_PREFIXES = ("ds_", "grid_", "btn_", "edt_", "cbo_", "chk_", "cal_", "pop_", "tab_", "div_", "txt_")
JS_METHOD_CALL = re.compile(r"\b([A-Za-z_$][\w$]*)\.([A-Za-z_$][\w$]*)\s*\(")


def check_api_allowlist(
    js_text: str,
    component_ids: Set[str],
    functions: Dict[str, int],
    result: ValidationResult,
) -> None:
    """
    Flag calls on xFrame5 objects to methods the runtime does not have.

    Script-defined functions, gfn_* common library calls and calls with an
    adjacent TODO marker are accepted. One warning per distinct call.
    """
    lines = js_text.splitlines()
    reported: Set[str] = set()
    for match in JS_METHOD_CALL.finditer(js_text):
        receiver, method = match.groups()
        if receiver not in component_ids and receiver not in SCREEN_RECEIVERS:
            if not receiver.startswith(COMPONENT_PREFIXES):
                continue
        if method.lower() in XFRAME5_API_METHODS or method in functions or method.startswith("gfn_"):
            continue

        call = f"{receiver}.{method}"
        line = _line_of(js_text, match.start())
        window = lines[max(0, line - 2): line + 1]
        if call in reported or any(PLACEHOLDER_MARKER.search(nearby) for nearby in window):
            continue
        reported.add(call)
        result.add(
            Severity.WARNING,
            UNKNOWN_API,
            f"javascript line {line} calls '{call}', which is not a known xFrame5 API "
            f"(verify it or mark it TODO)",
            f"javascript:{line}",
        )


# ============================================================================
# STEP 4: XFRAME5 UI CHECKS
# ============================================================================

DATASET_TAGS = {"xlinkdataset", "dataset", "xdataset"}
GRID_TAGS = {"grid", "xgrid"}
EVENTFUNC = re.compile(r"eventfunc\s*:\s*([A-Za-z_$][\w$]*)")
HANDLER_NAME = re.compile(r"^(?:fn_\w+|\w+_on_\w+)$")

JS_FUNCTION_PATTERNS = [
    re.compile(r"\bfunction\s+([A-Za-z_$][\w$]*)\s*\("),
    re.compile(r"\bthis\.([A-Za-z_$][\w$]*)\s*=\s*(?:async\s+)?function\b"),
    re.compile(r"\b(?:var|let|const)\s+([A-Za-z_$][\w$]*)\s*=\s*(?:async\s+)?(?:function\b|\([^)]*\)\s*=>)"),
]
JS_DATASET_REFERENCE = re.compile(r"\b(ds_\w+)\b")

_LIST_KINDS = (IntentKind.LIST, IntentKind.LIST_WITH_POPUP)


def js_functions(text: str) -> Dict[str, int]:
    """Declared function name → first line it appears on."""
    found: Dict[str, int] = {}
    for pattern in JS_FUNCTION_PATTERNS:
        for match in pattern.finditer(text):
            found.setdefault(match.group(1), _line_of(text, match.start()))
    return found


def _xframe5_declarations(root: ET.Element) -> Tuple[List[str], List[str], Dict[str, str], List[Tuple[str, str]]]:
    """Return (dataset ids, grid ids, handler → owning element, [(grid, link_data)])."""
    datasets: List[str] = []
    grids: List[str] = []
    handlers: Dict[str, str] = {}
    links: List[Tuple[str, str]] = []

    for element in root.iter():
        tag = _local_tag(element)
        ident = element.get("id") or element.get("name") or ""
        if tag in DATASET_TAGS and ident:
            datasets.append(ident)
        if tag in GRID_TAGS and ident:
            grids.append(ident)
        for attr, value in element.attrib.items():
            for match in EVENTFUNC.finditer(value):
                handlers.setdefault(match.group(1), f"<{tag} {attr}>")
            if attr.lower() in ("link_data", "linkdata") and value.strip():
                links.append((ident or f"<{tag}>", value.split(":")[0].strip()))

    return datasets, grids, handlers, links


def check_xframe5(sections: Dict[str, str], intent: Intent, result: ValidationResult) -> None:
    xml_text = sections.get("xml")
    js_text = sections.get("javascript")

    root = None
    if xml_text:
        root, error = parse_markup(xml_text)
        if error:
            result.add(Severity.ERROR, MARKUP, f"xml does not parse: {error}", "xml")

    functions = js_functions(js_text) if js_text else {}
    strict = bool(intent.fields)

    if root is not None:
        datasets, grids, handlers, links = _xframe5_declarations(root)

        if not datasets:
            result.add(Severity.WARNING, STRUCTURE, "xml declares no dataset", "xml")

        # Declared identifiers must follow the prefix conventions
        for dataset in datasets:
            if not dataset.startswith("ds_"):
                result.add(Severity.ERROR, NAMING, f"Dataset id '{dataset}' must start with 'ds_'", "xml")
        for grid in grids:
            if not grid.startswith("grid_"):
                result.add(Severity.ERROR, NAMING, f"Grid id '{grid}' must start with 'grid_'", "xml")
        for handler in handlers:
            if not HANDLER_NAME.match(handler):
                result.add(
                    Severity.ERROR,
                    NAMING,
                    f"Event handler '{handler}' must be named fn_<action> or <object>_on_<event>",
                    "xml",
                )

        # Identifiers the Intent requires
        if strict and intent.dataset_id not in datasets:
            result.add(Severity.ERROR, NAMING, f"Required dataset '{intent.dataset_id}' is not declared", "xml")
        if strict and intent.kind in _LIST_KINDS and intent.grid_id not in grids:
            result.add(Severity.ERROR, NAMING, f"Required grid '{intent.grid_id}' is not declared", "xml")

        for grid, dataset in links:
            if dataset not in datasets:
                result.add(
                    Severity.ERROR,
                    CROSS_REFERENCE,
                    f"xml {grid} link_data references dataset '{dataset}' that xml does not declare",
                    "xml",
                )

        if js_text:
            for handler, owner in handlers.items():
                if handler not in functions:
                    result.add(
                        Severity.ERROR,
                        CROSS_REFERENCE,
                        f"xml {owner} calls '{handler}' but javascript does not define it",
                        "xml -> javascript",
                    )
            # One finding per unknown dataset, at its first use
            reported: Set[str] = set()
            for match in JS_DATASET_REFERENCE.finditer(js_text):
                dataset = match.group(1)
                if dataset in datasets or dataset in reported:
                    continue
                reported.add(dataset)
                line = _line_of(js_text, match.start())
                result.add(
                    Severity.ERROR,
                    CROSS_REFERENCE,
                    f"javascript line {line} references dataset '{dataset}' that xml does not declare",
                    f"javascript:{line} -> xml",
                )

    if js_text:
        for name in intent.function_names:
            if name not in functions:
                result.add(
                    Severity.ERROR,
                    REQUIRED_FUNCTION,
                    f"Required function '{name}' is not defined",
                    "javascript",
                )
        for name, line in functions.items():
            if not HANDLER_NAME.match(name):
                result.add(
                    Severity.WARNING,
                    STYLE,
                    f"Function '{name}' does not follow the fn_ naming convention",
                    f"javascript:{line}",
                )
        component_ids = {e.get("id") for e in root.iter() if e.get("id")} if root is not None else set()
        check_api_allowlist(js_text, component_ids, functions, result)


# ============================================================================
# STEP 5: SPRING BACKEND CHECKS
# ============================================================================

JAVA_DECLARATION = re.compile(r"\b(?:class|interface|enum|record)\s+([A-Z]\w*)")
JAVA_IMPLEMENTS = re.compile(r"\bimplements\s+([A-Z]\w*)")
SERVICE_REFERENCE = re.compile(r"\b([A-Z]\w*Service)\b")
MAPPER_REFERENCE = re.compile(r"\b([A-Z]\w*Mapper)\b")
DTO_REFERENCE = re.compile(r"(?:resultType|parameterType)\s*=\s*\"([\w.]+)\"")

# Library types that happen to end in Mapper/Service
IGNORED_TYPES = {"ObjectMapper", "RowMapper", "ModelMapper", "ExecutorService"}

# slot → (accepted class-name suffixes, annotation hints)
SPRING_SLOT_RULES: Dict[str, Tuple[Tuple[str, ...], Tuple[str, ...]]] = {
    "controller": (("Controller",), ("@RestController", "@Controller")),
    "service": (("Service",), ()),
    "service_impl": (("ServiceImpl",), ("@Service",)),
    "dto": (("DTO", "Dto"), ()),
    "search_dto": (("SearchDTO", "SearchDto"), ()),
    "mapper": (("Mapper",), ("@Mapper",)),
}

MYBATIS_STATEMENTS = {"select", "insert", "update", "delete"}
GETTER = re.compile(r"\bget[A-Z]\w*\s*\(")


def _declared_types(text: str) -> List[str]:
    return [match.group(1) for match in JAVA_DECLARATION.finditer(text)]


def _has_method(text: str, name: str) -> bool:
    return re.search(rf"\b{re.escape(name)}\s*\(", text) is not None


def check_spring(sections: Dict[str, str], intent: Intent, result: ValidationResult) -> None:
    entity = intent.entity_class
    strict = bool(intent.fields)
    declared: Dict[str, List[str]] = {}

    for slot_name, (suffixes, annotations) in SPRING_SLOT_RULES.items():
        text = sections.get(slot_name)
        if not text:
            continue
        types = _declared_types(text)
        declared[slot_name] = types

        if strict:
            expected = [f"{entity}{suffix}" for suffix in suffixes]
            if not any(name in types for name in expected):
                result.add(
                    Severity.ERROR,
                    NAMING,
                    f"{slot_name} must declare '{expected[0]}'",
                    slot_name,
                )
        elif not any(name.endswith(suffixes) for name in types):
            result.add(
                Severity.ERROR,
                NAMING,
                f"{slot_name} must declare a type ending in '{suffixes[0]}'",
                slot_name,
            )

        if annotations and not any(annotation in text for annotation in annotations):
            result.add(Severity.WARNING, STRUCTURE, f"{slot_name} is missing {annotations[0]}", slot_name)

    service_text = sections.get("service")
    if service_text and strict:
        for method in intent.service_methods:
            if not _has_method(service_text, method):
                result.add(Severity.ERROR, REQUIRED_FUNCTION, f"Required service method '{method}' is not declared", "service")

    mapper_text = sections.get("mapper")
    if mapper_text:
        for method in intent.mapper_methods:
            if not _has_method(mapper_text, method):
                result.add(Severity.ERROR, REQUIRED_FUNCTION, f"Required mapper method '{method}' is not declared", "mapper")

    _check_spring_references(sections, declared, result)
    _check_mapper_xml(sections, declared, result)

    dto_text = sections.get("dto")
    if dto_text and "@Data" not in dto_text and "@Getter" not in dto_text and not GETTER.search(dto_text):
        result.add(Severity.SUGGESTION, STYLE, "DTO has no accessors; consider Lombok @Data", "dto")


def _unresolved(
    result: ValidationResult,
    source: str,
    target: str,
    names: Set[str],
    declared: Dict[str, List[str]],
    kind: str,
) -> None:
    if target not in declared:
        return
    for name in sorted(names - set(declared[target]) - IGNORED_TYPES):
        result.add(
            Severity.ERROR,
            CROSS_REFERENCE,
            f"{source} references {kind} '{name}' that {target} does not declare",
            f"{source} -> {target}",
        )


def _check_spring_references(sections: Dict[str, str], declared: Dict[str, List[str]], result: ValidationResult) -> None:
    controller = sections.get("controller")
    if controller:
        names = set(SERVICE_REFERENCE.findall(controller)) - set(declared.get("controller", []))
        _unresolved(result, "controller", "service", names, declared, "service")

    impl = sections.get("service_impl")
    if impl:
        _unresolved(result, "service_impl", "service", set(JAVA_IMPLEMENTS.findall(impl)), declared, "interface")
        names = set(MAPPER_REFERENCE.findall(impl)) - set(declared.get("service_impl", []))
        _unresolved(result, "service_impl", "mapper", names, declared, "mapper")


def _check_mapper_xml(sections: Dict[str, str], declared: Dict[str, List[str]], result: ValidationResult) -> None:
    text = sections.get("mapper_xml")
    if not text:
        return

    if "${" in text:
        result.add(
            Severity.WARNING,
            SECURITY,
            f"mapper_xml uses ${{}} substitution {text.count('${')} time(s); prefer #{{}} parameters",
            "mapper_xml",
        )

    root, error = parse_markup(text)
    if error:
        result.add(Severity.ERROR, MARKUP, f"mapper_xml does not parse: {error}", "mapper_xml")
        return

    mapper = next((e for e in root.iter() if _local_tag(e) == "mapper"), None)
    if mapper is None:
        result.add(Severity.ERROR, STRUCTURE, "mapper_xml has no <mapper> element", "mapper_xml")
        return

    namespace = (mapper.get("namespace") or "").strip()
    if not namespace:
        result.add(Severity.ERROR, STRUCTURE, "mapper_xml <mapper> has no namespace", "mapper_xml")
    elif "mapper" in declared and namespace.split(".")[-1] not in declared["mapper"]:
        result.add(
            Severity.ERROR,
            CROSS_REFERENCE,
            f"mapper_xml namespace '{namespace}' does not name the mapper interface declared in mapper",
            "mapper_xml -> mapper",
        )

    mapper_text = sections.get("mapper")
    for element in mapper.iter():
        if _local_tag(element) not in MYBATIS_STATEMENTS:
            continue
        statement = element.get("id")
        if statement and mapper_text and not _has_method(mapper_text, statement):
            result.add(
                Severity.ERROR,
                CROSS_REFERENCE,
                f"mapper_xml statement '{statement}' has no method in mapper",
                "mapper_xml -> mapper",
            )

    dto_types = set(declared.get("dto", [])) | set(declared.get("search_dto", []))
    if "dto" in declared:
        for match in DTO_REFERENCE.finditer(text):
            type_name = match.group(1).split(".")[-1]
            if type_name.lower().endswith("dto") and type_name not in dto_types:
                result.add(
                    Severity.ERROR,
                    CROSS_REFERENCE,
                    f"mapper_xml refers to '{type_name}' that dto does not declare",
                    "mapper_xml -> dto",
                )


# ============================================================================
# STEP 6: ENTRY POINT
# ============================================================================

ProductCheck = Callable[[Dict[str, str], Intent, ValidationResult], None]

PRODUCT_CHECKS: Dict[Product, ProductCheck] = {
    Product.XFRAME5_UI: check_xframe5,
    Product.SPRING_BACKEND: check_spring,
}


def validate_output(raw: str, intent: Intent) -> Tuple[GenerationArtifacts, ValidationResult]:
    """
    Split and check raw model output for the Intent's product.

    Args:
        raw: Text exactly as the model returned it
        intent: Intent the prompt was compiled from

    Returns:
        (artifacts, findings). Artifacts hold every non-empty slot that was found,
        whether or not it passed.

    Example:
        artifacts, result = validate_output(text, intent)
        if result.has_errors: ...
    """
    spec = get_product_spec(intent.product)
    result = ValidationResult()
    sections = {name: text for name, text in split_sections(raw, spec).items() if text.strip()}

    for slot in spec.slots:
        if slot.name not in sections and slot.required:
            result.add(
                Severity.ERROR,
                MISSING_SLOT,
                f"Required section '{slot.name}' is missing (expected marker '--- {slot.markers[0]} ---')",
                slot.name,
            )

    PRODUCT_CHECKS[spec.product](sections, intent, result)

    for slot in spec.slots:
        text = sections.get(slot.name)
        if text and slot.slot_type == SLOT_CODE:
            check_fabrication(slot.name, text, slot.flag_relative_endpoints, result)

    todo_count = sum(len(PLACEHOLDER_MARKER.findall(text)) for text in sections.values())
    if todo_count:
        result.add(Severity.INFO, STYLE, f"{todo_count} TODO/placeholder marker(s) left for the developer")

    artifacts = GenerationArtifacts(
        slots={slot.name: sections[slot.name] for slot in spec.slots if slot.name in sections},
        filenames={
            slot.name: spec.filename_for(slot, intent) for slot in spec.slots if slot.name in sections
        },
    )

    logger.info(
        f"Validated {intent.name}: {len(artifacts.slots)} slot(s), "
        f"{len(result.errors())} error(s), {len(result.findings)} finding(s)"
    )
    return artifacts, result


def determine_status(artifacts: GenerationArtifacts, result: ValidationResult) -> GenerationStatus:
    """No errors → success; errors with output → partial_success; nothing usable → failed."""
    if artifacts.is_empty:
        return GenerationStatus.FAILED
    if result.has_errors:
        return GenerationStatus.PARTIAL_SUCCESS
    return GenerationStatus.SUCCESS
