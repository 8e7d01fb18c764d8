"""
PRODUCTS MODULE - The fixed set of things this service can generate

Purpose:
    Each product declares its allowed kinds, its default kind and the artifact
    slots the model must return (with the section markers that delimit them).
    Normalizer, selector, compiler and validator all read from here, so adding
    a slot or kind happens in exactly one place.
"""

from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

from app.core.schemas import InputType, Intent, IntentKind, Product, ProductInfo


SLOT_MARKUP = "markup"
SLOT_CODE = "code"


@dataclass(frozen=True)
class SlotSpec:
    name: str
    markers: Tuple[str, ...]
    slot_type: str
    required: bool = True
    fence_languages: Tuple[str, ...] = ()
    # File name pattern, formatted with the intent
    filename: str = "{name}.txt"
    # Quoted relative "/api/..." paths count as endpoints in this slot
    flag_relative_endpoints: bool = False


@dataclass(frozen=True)
class ProductSpec:
    product: Product
    kinds: Tuple[IntentKind, ...]
    default_kind: IntentKind
    slots: Tuple[SlotSpec, ...]
    fallback_entity: str
    title: str = ""
    description: str = ""
    requires_knowledge: bool = True
    generator_version: int = 1

    @property
    def generator_id(self) -> str:
        return f"{self.product.value}-v{self.generator_version}"

    def describe(self) -> ProductInfo:
        return ProductInfo(
            id=self.product,
            name=self.title or self.product.value,
            description=self.description,
            generator=self.generator_id,
            kinds=list(self.kinds),
            default_kind=self.default_kind,
            input_types=list(InputType),
            output_types=[slot.name for slot in self.slots],
        )

    def slot(self, name: str) -> Optional[SlotSpec]:
        for slot in self.slots:
            if slot.name == name:
                return slot
        return None

    def slot_for_marker(self, marker: str) -> Optional[SlotSpec]:
        marker = marker.strip().upper()
        for slot in self.slots:
            if marker in slot.markers:
                return slot
        return None

    def slot_for_fence(self, language: str) -> Optional[SlotSpec]:
        language = language.strip().lower()
        for slot in self.slots:
            if language in slot.fence_languages:
                return slot
        return None

    def filename_for(self, slot: SlotSpec, intent: Intent) -> str:
        return slot.filename.format(
            name=intent.name,
            entity=intent.entity,
            entity_class=intent.entity_class,
        )


XFRAME5_UI = ProductSpec(
    product=Product.XFRAME5_UI,
    kinds=(
        IntentKind.LIST,
        IntentKind.DETAIL,
        IntentKind.POPUP,
        IntentKind.LIST_WITH_POPUP,
    ),
    default_kind=IntentKind.LIST,
    fallback_entity="screen",
    title="xFrame5 UI Generator",
    description="xFrame5 XML views and JavaScript event handlers",
    slots=(
        SlotSpec(
            name="xml",
            markers=("XML",),
            slot_type=SLOT_MARKUP,
            fence_languages=("xml",),
            filename="{name}.xml",
        ),
        SlotSpec(
            name="javascript",
            markers=("JS", "JAVASCRIPT", "SCRIPT"),
            slot_type=SLOT_CODE,
            fence_languages=("javascript", "js"),
            filename="{name}.js",
            flag_relative_endpoints=True,
        ),
    ),
)

SPRING_BACKEND = ProductSpec(
    product=Product.SPRING_BACKEND,
    kinds=(IntentKind.CRUD,),
    default_kind=IntentKind.CRUD,
    fallback_entity="entity",
    title="Spring Framework Generator",
    description="Spring controller, service, DTO and MyBatis mapper for one table",
    slots=(
        SlotSpec("controller", ("CONTROLLER",), SLOT_CODE, filename="{entity_class}Controller.java"),
        SlotSpec("service", ("SERVICE",), SLOT_CODE, filename="{entity_class}Service.java"),
        SlotSpec(
            "service_impl",
            ("SERVICE_IMPL", "SERVICEIMPL", "SERVICE IMPL"),
            SLOT_CODE,
            filename="{entity_class}ServiceImpl.java",
        ),
        SlotSpec("dto", ("DTO",), SLOT_CODE, filename="{entity_class}DTO.java"),
        SlotSpec(
            "search_dto",
            ("SEARCH_DTO", "SEARCHDTO", "SEARCH DTO"),
            SLOT_CODE,
            required=False,
            filename="{entity_class}SearchDTO.java",
        ),
        SlotSpec("mapper", ("MAPPER",), SLOT_CODE, filename="{entity_class}Mapper.java"),
        SlotSpec(
            "mapper_xml",
            ("MAPPER_XML", "MAPPERXML", "MAPPER XML"),
            SLOT_MARKUP,
            filename="{entity_class}Mapper.xml",
        ),
    ),
)

PRODUCTS: Dict[Product, ProductSpec] = {
    Product.XFRAME5_UI: XFRAME5_UI,
    Product.SPRING_BACKEND: SPRING_BACKEND,
}


def get_product_spec(product: Product) -> ProductSpec:
    return PRODUCTS[Product(product)]


def list_products() -> List[ProductInfo]:
    return [spec.describe() for spec in PRODUCTS.values()]
