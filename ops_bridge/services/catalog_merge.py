"""Catalog supplement: products, variants and the manual mapping queue.

Web-system products are the canonical catalog. Ops-system packages are matched
to them by legacy package id, then by slug; a package with no match still gets
a fallback product so bookings referencing it resolve, plus an unmapped entry so
somebody maps it by hand.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterable, Optional

from ops_bridge.config import SOURCE_SETTINGS
from ops_bridge.models.db.enums import UnmappedQueueType, UnmappedStatus
from ops_bridge.utils import get_logger
from ops_bridge.utils.identity import NS_CATALOG_PRODUCT, NS_CATALOG_VARIANT, derive_key, unmapped_queue_key
from ops_bridge.utils.normalize import (
    norm_currency,
    norm_slug,
    norm_text,
    norm_upper,
    parse_bool,
    parse_int_or,
)

logger = get_logger(__name__)

WEB_SYSTEM = str(SOURCE_SETTINGS["web_system"])
OPS_SYSTEM = str(SOURCE_SETTINGS["ops_system"])


@dataclass
class CatalogMergeResult:
    products: dict[str, dict[str, Any]] = field(default_factory=dict)
    variants: dict[str, dict[str, Any]] = field(default_factory=dict)
    unmapped: dict[str, dict[str, Any]] = field(default_factory=dict)

    def add_unmapped(
        self,
        queue_type: str,
        source_system: str,
        source_table: str,
        source_pk: str,
        reason_code: str,
        reason_detail: str,
        payload: Optional[dict[str, Any]] = None,
    ) -> None:
        key = unmapped_queue_key(queue_type, source_system, source_table, source_pk, reason_code)
        self.unmapped[key] = {
            "queue_key": key,
            "queue_type": queue_type,
            "source_system": source_system,
            "source_table": source_table,
            "source_pk": source_pk,
            "reason_code": reason_code,
            "reason_detail": reason_detail,
            "status": UnmappedStatus.OPEN.value,
            "payload": payload,
        }

    def prepared_counts(self) -> dict[str, int]:
        return {
            "catalogProduct": len(self.products),
            "catalogVariant": len(self.variants),
            "unmappedQueue": len(self.unmapped),
        }


def _min_one(value: Any) -> int:
    return max(1, parse_int_or(value, 1) or 1)


def merge_catalog(
    products: Iterable[dict[str, Any]],
    variants: Iterable[dict[str, Any]],
    packages: Iterable[dict[str, Any]],
) -> CatalogMergeResult:
    result = CatalogMergeResult()
    by_product_id: dict[str, str] = {}
    by_slug: dict[str, str] = {}
    by_legacy_package: dict[str, str] = {}

    for row in products:
        product_id = str(row.get("product_id"))
        key = derive_key(NS_CATALOG_PRODUCT, f"{WEB_SYSTEM}:TourProduct:{product_id}")
        slug = norm_slug(row.get("slug")) or f"balisnap-product-{product_id}"
        result.products[key] = {
            "product_key": key,
            "slug": slug,
            "name": norm_text(row.get("product_name")) or f"Product {product_id}",
            "product_category": norm_text(row.get("category")),
            "short_description": norm_text(row.get("short_description")),
            "is_active": parse_bool(row.get("is_active"), True),
            "is_featured": parse_bool(row.get("is_featured"), False),
            "thumbnail_url": norm_text(row.get("thumbnail_url")),
            "country_code": (norm_upper(row.get("country_code")) or "ID")[:2],
            "source_system": WEB_SYSTEM,
        }
        by_product_id[product_id] = key
        by_slug[slug] = key
        legacy = norm_text(row.get("legacy_package_id"))
        if legacy:
            by_legacy_package[legacy] = key

    package_rows = [dict(row) for row in packages]
    for row in package_rows:
        package_id = str(row.get("package_id"))
        slug = norm_slug(row.get("slug"))
        matched = by_legacy_package.get(package_id) or (by_slug.get(slug) if slug else None)
        if matched:
            by_legacy_package.setdefault(package_id, matched)
            continue
        result.add_unmapped(
            UnmappedQueueType.PRODUCT_MAPPING.value,
            OPS_SYSTEM,
            "tour_packages",
            package_id,
            "NO_MATCH",
            "No balisnap match via legacy_package_id/slug",
            {"packageSlug": norm_text(row.get("slug")), "packageName": norm_text(row.get("package_name"))},
        )
        key = derive_key(NS_CATALOG_PRODUCT, f"{OPS_SYSTEM}:tour_packages:{package_id}")
        result.products[key] = {
            "product_key": key,
            "slug": slug or f"bstadmin-package-{package_id}",
            "name": norm_text(row.get("package_name")) or f"Package {package_id}",
            "product_category": None,
            "short_description": norm_text(row.get("short_description")),
            "is_active": True,
            "is_featured": parse_bool(row.get("is_featured"), False),
            "thumbnail_url": norm_text(row.get("thumbnail_url")),
            "country_code": "ID",
            "source_system": OPS_SYSTEM,
        }
        by_legacy_package[package_id] = key

    packages_with_variant: set[str] = set()
    for row in variants:
        variant_id = str(row.get("variant_id"))
        legacy = norm_text(row.get("legacy_package_id"))
        product_key = by_product_id.get(str(row.get("product_id"))) or (by_legacy_package.get(legacy) if legacy else None)
        if not product_key:
            result.add_unmapped(
                UnmappedQueueType.VARIANT_MAPPING.value,
                WEB_SYSTEM,
                "TourVariant",
                variant_id,
                "NO_MATCH",
                "Parent product mapping not found",
                {"productId": norm_text(row.get("product_id")), "legacyPackageId": legacy},
            )
            continue
        key = derive_key(NS_CATALOG_VARIANT, f"{WEB_SYSTEM}:TourVariant:{variant_id}")
        result.variants[key] = {
            "variant_key": key,
            "product_key": product_key,
            "code": norm_upper(row.get("variant_code")) or f"VARIANT-{variant_id}",
            "name": norm_text(row.get("variant_name")) or f"Variant {variant_id}",
            "service_type": norm_upper(row.get("service_type")) or "PRIVATE",
            "duration_days": _min_one(row.get("duration_days")),
            "min_pax": _min_one(row.get("min_pax")),
            "max_pax": parse_int_or(row.get("max_pax"), None),
            "currency_code": norm_currency(row.get("currency_code")),
            "is_default": parse_bool(row.get("is_default"), False),
            "is_active": parse_bool(row.get("is_active"), True),
            "legacy_package_id": legacy,
        }
        if legacy:
            packages_with_variant.add(legacy)

    for row in package_rows:
        package_id = str(row.get("package_id"))
        product_key = by_legacy_package.get(package_id)
        if package_id in packages_with_variant or not product_key:
            continue
        key = derive_key(NS_CATALOG_VARIANT, f"{OPS_SYSTEM}:tour_packages:{package_id}")
        result.variants[key] = {
            "variant_key": key,
            "product_key": product_key,
            "code": f"PKG-{package_id}",
            "name": norm_text(row.get("package_name")) or f"Package {package_id}",
            "service_type": "PRIVATE",
            "duration_days": _min_one(row.get("duration_days")),
            "min_pax": _min_one(row.get("min_booking")),
            "max_pax": parse_int_or(row.get("max_booking"), None),
            "currency_code": norm_currency(row.get("base_currency")),
            "is_default": True,
            "is_active": True,
            "legacy_package_id": package_id,
        }
        packages_with_variant.add(package_id)

    logger.info("Catalog merge prepared", **result.prepared_counts())
    return result


__all__ = ["CatalogMergeResult", "merge_catalog"]
