"""
Module kind descriptors.

One generic engine serves all six module kinds; each kind only declares its
dimension axes, the status it reaches when complete, whether its values track
environment retirement, how campaigns reference it and how its content is laid
out for the config-delivery service.
"""

from enum import Enum
from typing import Any, Dict, List, Optional, Set

from pydantic import BaseModel, ConfigDict

from .models import (
    DimensionKey, Module, ModuleKindName, ModuleStatus, ModuleValue, ScopeRequirements,
)


class DimensionAxes(str, Enum):
    COUNTRY_LANGUAGE = "country_language"
    LANGUAGE = "language"
    COUNTRY = "country"
    FIELD = "field"
    NONE = "none"


class ModuleKind(BaseModel):
    """Traits of one module kind."""
    model_config = ConfigDict(frozen=True)

    name: ModuleKindName
    axes: DimensionAxes
    ready_status: ModuleStatus = ModuleStatus.READY
    has_values: bool = True
    retires_values: bool = False
    references_skus: bool = False
    requires_countries: bool = False
    campaign_reference: Optional[str] = None  # CampaignReferences attribute
    step_label: str = ""

    @property
    def is_composite(self) -> bool:
        return self.name == ModuleKindName.CAMPAIGN

    # ── Completeness ──────────────────────────────────────────────

    def required_keys(self, requirements: Optional[ScopeRequirements]) -> Set[DimensionKey]:
        """All dimension keys that must carry a value for this kind to be complete."""
        if requirements is None or not self.has_values:
            return set()
        fields = requirements.fields_for(self.name)
        if self.axes == DimensionAxes.COUNTRY_LANGUAGE:
            return {(f, r.country, r.language) for f in fields for r in requirements.regions}
        if self.axes == DimensionAxes.LANGUAGE:
            return {(f, None, lang) for f in fields for lang in requirements.languages()}
        if self.axes == DimensionAxes.COUNTRY:
            return {(f, c, None) for f in fields for c in requirements.countries()}
        if self.axes == DimensionAxes.FIELD:
            return {(f, None, None) for f in fields}
        return set()

    def normalize_key(self, value: ModuleValue) -> ModuleValue:
        """Drop axes this kind does not use so dimension keys compare 1:1."""
        if self.axes in (DimensionAxes.LANGUAGE, DimensionAxes.FIELD):
            value.country = None
        if self.axes in (DimensionAxes.COUNTRY, DimensionAxes.FIELD):
            value.language = None
        return value

    # ── Config-delivery payloads ──────────────────────────────────

    def build_payloads(self, module: Module, values: List[ModuleValue]) -> Dict[Optional[str], Dict[str, Any]]:
        """
        Group module content by delivery region. The key is the region path
        segment (None when the kind is delivered once per store/product).
        """
        header = {
            "moduleId": module.module_id,
            "name": module.name,
            "isDefault": module.is_default,
        }
        if self.is_composite:
            refs = module.references
            return {None: {
                **header,
                "startDate": module.start_date.isoformat() if module.start_date else None,
                "endDate": module.end_date.isoformat() if module.end_date else None,
                "appCopyId": refs.app_copy_id,
                "skuId": refs.sku_id,
                "selectorConfigId": refs.selector_config_id,
                "storeCopyId": refs.store_copy_id,
                "imageCollectionIds": list(refs.image_collection_ids),
            }}

        payloads: Dict[Optional[str], Dict[str, Any]] = {}
        if self.axes == DimensionAxes.COUNTRY_LANGUAGE:
            for v in values:
                region = payloads.setdefault(v.country, {**header, "languages": {}})
                region["languages"].setdefault(v.language, {})[v.field] = v.value
        elif self.axes == DimensionAxes.COUNTRY:
            for v in values:
                region = payloads.setdefault(v.country, {**header, "entries": []})
                region["entries"].append({"slot": v.field, "skuId": v.reference_id, "value": v.value})
        elif self.axes == DimensionAxes.LANGUAGE:
            region = payloads.setdefault(None, {**header, "languages": {}})
            for v in values:
                region["languages"].setdefault(v.language, {})[v.field] = v.value
        else:
            region = payloads.setdefault(None, {**header, "fields": {}})
            for v in values:
                region["fields"][v.field] = v.value
            if module.countries:
                region["countries"] = list(module.countries)
        return payloads


MODULE_KINDS: Dict[ModuleKindName, ModuleKind] = {
    ModuleKindName.APP_COPY: ModuleKind(
        name=ModuleKindName.APP_COPY, axes=DimensionAxes.COUNTRY_LANGUAGE,
        retires_values=True, campaign_reference="app_copy_id", step_label="publish-app-copy",
    ),
    ModuleKindName.SKU: ModuleKind(
        name=ModuleKindName.SKU, axes=DimensionAxes.COUNTRY_LANGUAGE,
        ready_status=ModuleStatus.COMPLETE, campaign_reference="sku_id", step_label="publish-sku",
    ),
    ModuleKindName.SELECTOR_CONFIG: ModuleKind(
        name=ModuleKindName.SELECTOR_CONFIG, axes=DimensionAxes.COUNTRY,
        ready_status=ModuleStatus.COMPLETE, retires_values=True, references_skus=True,
        campaign_reference="selector_config_id", step_label="publish-selector-config",
    ),
    ModuleKindName.STORE_COPY: ModuleKind(
        name=ModuleKindName.STORE_COPY, axes=DimensionAxes.LANGUAGE,
        retires_values=True, campaign_reference="store_copy_id", step_label="publish-store-copy",
    ),
    ModuleKindName.IMAGE_COLLECTION: ModuleKind(
        name=ModuleKindName.IMAGE_COLLECTION, axes=DimensionAxes.FIELD,
        requires_countries=True, campaign_reference="image_collection_ids",
        step_label="publish-image-collections",
    ),
    ModuleKindName.CAMPAIGN: ModuleKind(
        name=ModuleKindName.CAMPAIGN, axes=DimensionAxes.NONE, has_values=False,
        step_label="publish-campaign",
    ),
}

# Order in which a campaign publishes its sub-modules.
CAMPAIGN_SUB_MODULE_ORDER = [
    ModuleKindName.APP_COPY,
    ModuleKindName.SKU,
    ModuleKindName.SELECTOR_CONFIG,
    ModuleKindName.IMAGE_COLLECTION,
    ModuleKindName.STORE_COPY,
]


def get_kind(name: ModuleKindName) -> ModuleKind:
    return MODULE_KINDS[ModuleKindName(name)]
