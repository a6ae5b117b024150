"""Request Payload Normalization

Older requests carry a single product as top-level fields; newer ones carry
a `products` list. Both shapes are parsed into one canonical product list at
the boundary, and the first product is mirrored back onto the legacy
top-level fields so the wire format stays compatible with either reader.

Every function here is pure, and `normalize_request_payload` is idempotent.
"""
import math
from typing import Any, Dict, List, Literal, Optional, Tuple, Union
from pydantic import BaseModel, Field


# Keys owned by the workflow engine, never part of the business payload
ENGINE_OWNED_KEYS = frozenset({"id", "status", "history", "createdAt", "updatedAt", "version"})

# Top-level keys that describe the (single) legacy product
LEGACY_PRODUCT_FIELDS = frozenset({
    "axleLocation",
    "axleLocationOther",
    "articulationType",
    "articulationTypeOther",
    "configurationType",
    "configurationTypeOther",
    "quantity",
    "loadsKg",
    "speedsKmh",
    "tyreSize",
    "trackMm",
    "studsPcdMode",
    "studsPcdStandardSelections",
    "studsPcdSpecialText",
    "wheelBase",
    "finish",
    "brakeType",
    "brakeSize",
    "brakePowerType",
    "brakeCertificate",
    "mainBodySectionType",
    "clientSealingRequest",
    "cupLogo",
    "suspension",
    "otherRequirements",
    "productComments",
    "attachments",
})

# Product fields copied by name between a product and the legacy top level
_SHARED_TEXT_FIELDS = (
    "axleLocation",
    "axleLocationOther",
    "articulationType",
    "articulationTypeOther",
    "configurationType",
    "configurationTypeOther",
    "tyreSize",
    "studsPcdSpecialText",
    "wheelBase",
    "brakeSize",
    "brakePowerType",
    "brakeCertificate",
    "mainBodySectionType",
    "clientSealingRequest",
    "cupLogo",
    "suspension",
)
_SHARED_NULLABLE_FIELDS = ("loadsKg", "speedsKmh", "trackMm", "brakeType")

DEFAULT_FINISH = "Black Primer default"
DEFAULT_STUDS_PCD_MODE = "standard"
DEFAULT_CURRENCY = "EUR"
MAX_PAYMENT_TERMS = 6

_ATTACHMENT_LIST_FIELDS = (
    "attachments",
    "designResultAttachments",
    "costingAttachments",
    "salesAttachments",
)
_TEXT_DEFAULT_FIELDS = (
    "designResultComments",
    "city",
    "incoterm",
    "incotermOther",
    "deliveryLeadtime",
    "salesIncoterm",
    "salesIncotermOther",
    "salesWarrantyPeriod",
    "salesOfferValidityPeriod",
    "salesExpectedDeliveryDate",
    "salesFeedbackComment",
    "clientExpectedDeliveryDate",
)


# =============================================================================
# Product Source (tagged union)
# =============================================================================

class LegacySingleProduct(BaseModel):
    """Payload that describes its only product with top-level fields"""
    kind: Literal["legacy"] = "legacy"
    fields: Dict[str, Any] = Field(default_factory=dict)


class ProductList(BaseModel):
    """Payload with an explicit products list"""
    kind: Literal["products"] = "products"
    products: List[Dict[str, Any]] = Field(default_factory=list)


ProductSource = Union[LegacySingleProduct, ProductList]


def parse_product_source(payload: Dict[str, Any]) -> ProductSource:
    """Pick the product shape a payload uses"""
    products = payload.get("products")
    if isinstance(products, list) and products:
        return ProductList(products=[p if isinstance(p, dict) else {} for p in products])
    return LegacySingleProduct(fields=payload)


def canonical_products(source: ProductSource) -> List[Dict[str, Any]]:
    """Canonical, non-empty list of normalized products"""
    if isinstance(source, ProductList):
        return [normalize_product(product) for product in source.products]
    return [build_legacy_product(source.fields)]


# =============================================================================
# Field Helpers
# =============================================================================

def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value)


def parse_optional_number(value: Any) -> Optional[float]:
    """Numbers pass through; numeric strings are parsed; anything else is None"""
    if _is_number(value):
        return value
    if isinstance(value, str) and value.strip():
        try:
            parsed = float(value)
        except ValueError:
            return None
        return parsed if math.isfinite(parsed) else None
    return None


def _text(value: Any, default: str = "") -> str:
    return value if isinstance(value, str) else default


def _list(value: Any) -> List[Any]:
    return list(value) if isinstance(value, list) else []


def _or_default(value: Any, default: Any) -> Any:
    return default if value is None else value


# =============================================================================
# Products
# =============================================================================

def normalize_product(product: Dict[str, Any]) -> Dict[str, Any]:
    """Fill product defaults while keeping unknown keys"""
    normalized = dict(product)
    for key in _SHARED_TEXT_FIELDS:
        normalized[key] = _or_default(product.get(key), "")
    for key in _SHARED_NULLABLE_FIELDS:
        normalized[key] = product.get(key)
    normalized["quantity"] = product.get("quantity") if _is_number(product.get("quantity")) else None
    normalized["studsPcdMode"] = _or_default(product.get("studsPcdMode"), DEFAULT_STUDS_PCD_MODE)
    normalized["studsPcdStandardSelections"] = _list(product.get("studsPcdStandardSelections"))
    normalized["finish"] = _or_default(product.get("finish"), DEFAULT_FINISH)
    comments = product.get("productComments")
    if not isinstance(comments, str):
        comments = _or_default(product.get("otherRequirements"), "")
    normalized["productComments"] = comments
    normalized["attachments"] = _list(product.get("attachments"))
    return normalized


def build_legacy_product(data: Dict[str, Any]) -> Dict[str, Any]:
    """Lift the top-level legacy product fields into a product dict"""
    product = {key: data.get(key) for key in _SHARED_TEXT_FIELDS + _SHARED_NULLABLE_FIELDS}
    product.update({
        "quantity": data.get("expectedQty") if _is_number(data.get("expectedQty")) else None,
        "studsPcdMode": data.get("studsPcdMode"),
        "studsPcdStandardSelections": data.get("studsPcdStandardSelections"),
        "finish": data.get("finish"),
        "productComments": data.get("productComments", data.get("otherRequirements")),
        "attachments": data.get("attachments"),
    })
    return normalize_product(product)


def sync_legacy_from_product(target: Dict[str, Any], product: Dict[str, Any]) -> Dict[str, Any]:
    """Mirror a normalized product onto the legacy top-level fields"""
    synced = dict(target)
    for key in _SHARED_TEXT_FIELDS:
        synced[key] = _or_default(product.get(key), "")
    for key in _SHARED_NULLABLE_FIELDS:
        synced[key] = product.get(key)
    quantity = product.get("quantity")
    synced["expectedQty"] = quantity if _is_number(quantity) else target.get("expectedQty")
    synced["studsPcdMode"] = _or_default(product.get("studsPcdMode"), DEFAULT_STUDS_PCD_MODE)
    synced["studsPcdStandardSelections"] = _list(product.get("studsPcdStandardSelections"))
    synced["finish"] = _or_default(product.get("finish"), DEFAULT_FINISH)
    comments = product.get("productComments")
    synced["otherRequirements"] = comments if isinstance(comments, str) else target.get("otherRequirements")
    synced["attachments"] = _list(product.get("attachments"))
    return synced


def has_legacy_product_updates(changes: Dict[str, Any]) -> bool:
    """True when an edit touches legacy product fields without sending products"""
    if isinstance(changes.get("products"), list):
        return False
    return any(key in LEGACY_PRODUCT_FIELDS for key in changes)


# =============================================================================
# Sales Payment Terms
# =============================================================================

def normalize_sales_payment_terms(terms: Any, count: Any) -> Tuple[int, List[Dict[str, Any]]]:
    """
    Clamp the term count to 1..6 and renumber the terms.

    Returns:
        (term_count, terms)
    """
    source = terms if isinstance(terms, list) else []
    try:
        base_count = int(str(count).strip())
    except (TypeError, ValueError):
        base_count = len(source) or 1
    term_count = min(MAX_PAYMENT_TERMS, max(1, base_count))

    normalized = []
    for index in range(term_count):
        raw = source[index] if index < len(source) and isinstance(source[index], dict) else {}
        normalized.append({
            "paymentNumber": index + 1,
            "paymentName": _text(raw.get("paymentName")),
            "paymentPercent": parse_optional_number(raw.get("paymentPercent")),
            "comments": _text(raw.get("comments")),
        })
    return term_count, normalized


# =============================================================================
# Whole Payload
# =============================================================================

def strip_engine_keys(data: Dict[str, Any]) -> Dict[str, Any]:
    """Drop keys the engine owns so clients cannot write them directly"""
    return {key: value for key, value in data.items() if key not in ENGINE_OWNED_KEYS}


def normalize_request_payload(payload: Dict[str, Any]) -> Dict[str, Any]:
    """
    Normalize a business payload into its canonical stored form.

    Args:
        payload: Business fields (camelCase, as sent by the UI)

    Returns:
        New dict with defaults filled, a non-empty `products` list and the
        legacy top-level fields mirrored from the first product
    """
    data = strip_engine_keys(payload)
    products = canonical_products(parse_product_source(data))

    term_count, terms = normalize_sales_payment_terms(
        data.get("salesPaymentTerms"), data.get("salesPaymentTermCount")
    )

    normalized = dict(data)
    for key in _ATTACHMENT_LIST_FIELDS:
        normalized[key] = _list(data.get(key))
    for key in _TEXT_DEFAULT_FIELDS:
        normalized[key] = _text(data.get(key))
    normalized.update({
        "sellingCurrency": _text(data.get("sellingCurrency"), DEFAULT_CURRENCY),
        "salesCurrency": _text(data.get("salesCurrency"), DEFAULT_CURRENCY),
        "vatMode": "with" if data.get("vatMode") == "with" else "without",
        "salesVatMode": "with" if data.get("salesVatMode") == "with" else "without",
        "vatRate": data.get("vatRate") if _is_number(data.get("vatRate")) else None,
        "salesFinalPrice": data.get("salesFinalPrice") if _is_number(data.get("salesFinalPrice")) else None,
        "salesVatRate": parse_optional_number(data.get("salesVatRate")),
        "salesMargin": parse_optional_number(data.get("salesMargin")),
        "salesPaymentTermCount": term_count,
        "salesPaymentTerms": terms,
        "products": products,
    })
    return sync_legacy_from_product(normalized, products[0])


def merge_edit(existing: Dict[str, Any], changes: Dict[str, Any]) -> Dict[str, Any]:
    """
    Apply a field edit to a stored payload.

    Legacy product fields sent without a products list rewrite the first
    product; the remaining products are kept.
    """
    changes = strip_engine_keys(changes)
    merged = dict(existing)
    merged.update(changes)

    if has_legacy_product_updates(changes):
        legacy_product = build_legacy_product(merged)
        existing_products = _list(existing.get("products"))
        merged["products"] = [legacy_product] + existing_products[1:]

    return normalize_request_payload(merged)
