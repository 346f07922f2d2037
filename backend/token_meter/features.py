"""
Feature catalog

A closed set of metered features, each with its own integer cost formula.
Legacy names from earlier releases are still accepted by Feature.parse().
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional, Union

from .errors import UnknownFeature


@dataclass(frozen=True)
class FeatureCost:
    """Token cost formula for a feature."""
    base: int
    per_language: Optional[int] = None
    per_product: Optional[int] = None
    description: str = ""

    def compute(self, languages: int = 0, product_count: int = 0) -> int:
        total = self.base
        if self.per_language:
            total += max(0, languages - 1) * self.per_language
        if self.per_product:
            total += max(0, product_count) * self.per_product
        return total


class Feature(str, Enum):
    BASIC_ITEM_SEO = "basic-item-seo"
    ENHANCED_ITEM_SEO = "enhanced-item-seo"
    COLLECTION_SEO = "collection-seo"
    SIMULATION_TEST = "simulation-test"
    VALIDATION_TEST = "validation-test"
    ADVANCED_SCHEMA = "advanced-schema"
    OPTIMIZED_SITEMAP = "optimized-sitemap"

    @property
    def cost(self) -> FeatureCost:
        return FEATURE_COSTS[self]

    @classmethod
    def parse(cls, value: Union["Feature", str]) -> "Feature":
        """Resolve a Feature from a member, its value, or a legacy name."""
        if isinstance(value, cls):
            return value
        key = str(value or "").lower().strip()
        try:
            return cls(key)
        except ValueError:
            pass
        if key in LEGACY_FEATURE_NAMES:
            return LEGACY_FEATURE_NAMES[key]
        raise UnknownFeature(value)


FEATURE_COSTS = {
    Feature.BASIC_ITEM_SEO: FeatureCost(
        base=1000, per_language=800,
        description="AI SEO optimization for product",
    ),
    Feature.ENHANCED_ITEM_SEO: FeatureCost(
        base=2000, per_language=1500,
        description="Enhanced AI SEO with rich attributes",
    ),
    Feature.COLLECTION_SEO: FeatureCost(
        base=1500, per_language=1200,
        description="AI SEO optimization for collection",
    ),
    Feature.SIMULATION_TEST: FeatureCost(
        base=500,
        description="AI testing and simulation",
    ),
    Feature.VALIDATION_TEST: FeatureCost(
        base=50,
        description="AI-powered validation of endpoint data",
    ),
    Feature.ADVANCED_SCHEMA: FeatureCost(
        base=3000, per_product=2500,
        description="Advanced schema data generation",
    ),
    Feature.OPTIMIZED_SITEMAP: FeatureCost(
        base=5000, per_product=3000,
        description="AI-optimized sitemap generation",
    ),
}

LEGACY_FEATURE_NAMES = {
    "ai-seo-product-basic": Feature.BASIC_ITEM_SEO,
    "ai-seo-product-enhanced": Feature.ENHANCED_ITEM_SEO,
    "ai-seo-collection": Feature.COLLECTION_SEO,
    "ai-testing-simulation": Feature.SIMULATION_TEST,
    "ai-testing-validation": Feature.VALIDATION_TEST,
    "ai-schema-advanced": Feature.ADVANCED_SCHEMA,
    "ai-sitemap-optimized": Feature.OPTIMIZED_SITEMAP,
}

# Basic SEO does NOT require tokens; only AI-enhanced features do
TOKEN_REQUIRED_FEATURES = frozenset({
    Feature.ENHANCED_ITEM_SEO,
    Feature.COLLECTION_SEO,
    Feature.SIMULATION_TEST,
    Feature.VALIDATION_TEST,
    Feature.ADVANCED_SCHEMA,
    Feature.OPTIMIZED_SITEMAP,
})

# Basic SEO is allowed in trial
TRIAL_BLOCKED_FEATURES = frozenset({
    Feature.ENHANCED_ITEM_SEO,
    Feature.COLLECTION_SEO,
    Feature.SIMULATION_TEST,
    Feature.VALIDATION_TEST,
    Feature.ADVANCED_SCHEMA,
    Feature.OPTIMIZED_SITEMAP,
})
