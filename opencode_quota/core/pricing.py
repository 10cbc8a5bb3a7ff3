"""
Pricing calculations and rate management.

Looks up per-model rates from a static pricing snapshot and computes costs.
"""

import json
from dataclasses import dataclass, field
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml

from opencode_quota.storage.models import TokenCounts

TOKENS_PER_UNIT = Decimal("1000000")


@dataclass(frozen=True)
class ModelPricing:
    """Per-token pricing for a specific model, in USD per 1M tokens."""
    input: Decimal = Decimal("0")
    output: Decimal = Decimal("0")
    cache_read: Decimal = Decimal("0")
    cache_write: Decimal = Decimal("0")
    reasoning: Optional[Decimal] = None  # Billed at the output rate when absent


@dataclass(frozen=True)
class PricingTable:
    """Pricing snapshot indexed by provider and model."""
    prices: Dict[str, Dict[str, ModelPricing]]
    meta: Dict[str, Any] = field(default_factory=dict)

    def lookup(self, provider_id: Optional[str], model_id: Optional[str]) -> Optional[ModelPricing]:
        """Get pricing for a provider/model pair.

        Returns:
            ModelPricing, or None when the pair is not in the snapshot
        """
        if not provider_id or not model_id:
            return None
        return self.prices.get(provider_id, {}).get(model_id)

    def has_provider(self, provider_id: str) -> bool:
        return provider_id in self.prices

    def list_providers(self) -> List[str]:
        return list(self.prices)

    def infer_provider_for_model(self, model_id: Optional[str]) -> Optional[str]:
        """Find the provider that owns a model id.

        Returns None when no provider lists the model, or when more than one
        does.
        """
        if not model_id:
            return None
        owners = [p for p, models in self.prices.items() if model_id in models]
        if len(owners) != 1:
            return None
        return owners[0]


EMPTY_PRICING_TABLE = PricingTable(prices={})


def calculate_cost(pricing: ModelPricing, tokens: TokenCounts) -> float:
    """Calculate the USD cost of a message's tokens.

    Args:
        pricing: Rates for the message's model
        tokens: Token buckets of the message

    Returns:
        Cost in USD
    """
    reasoning_rate = pricing.reasoning if pricing.reasoning is not None else pricing.output
    total = (
        Decimal(tokens.input) * pricing.input
        + Decimal(tokens.output) * pricing.output
        + Decimal(tokens.reasoning) * reasoning_rate
        + Decimal(tokens.cache_read) * pricing.cache_read
        + Decimal(tokens.cache_write) * pricing.cache_write
    )
    return float(total / TOKENS_PER_UNIT)


def load_pricing_table(path: Union[str, Path]) -> PricingTable:
    """Load a pricing snapshot from a JSON or YAML file.

    The snapshot has the shape:
        {"_meta": {...}, "providers": {provider: {model: {input, output, ...}}}}

    Raises:
        FileNotFoundError: If the file doesn't exist
        ValueError: If the snapshot is malformed
    """
    snapshot_path = Path(path)
    if not snapshot_path.exists():
        raise FileNotFoundError(f"Pricing snapshot not found: {path}")

    with open(snapshot_path, "r", encoding="utf-8") as f:
        if snapshot_path.suffix.lower() == ".json":
            try:
                raw = json.load(f)
            except json.JSONDecodeError as e:
                raise ValueError(f"Invalid JSON in pricing snapshot {path}: {e}")
        else:
            raw = yaml.safe_load(f)

    return parse_pricing_snapshot(raw)


def parse_pricing_snapshot(raw: Any) -> PricingTable:
    """Validate a decoded pricing snapshot and build a PricingTable."""
    if not isinstance(raw, dict):
        raise ValueError("Pricing snapshot must be a dictionary")

    providers = raw.get("providers")
    if not isinstance(providers, dict):
        raise ValueError("Pricing snapshot is missing a 'providers' dictionary")

    prices: Dict[str, Dict[str, ModelPricing]] = {}
    for provider_id, models in providers.items():
        if not isinstance(models, dict):
            raise ValueError(f"Provider '{provider_id}' must map model ids to rates")
        prices[provider_id] = {
            model_id: _parse_rates(rates, f"{provider_id}/{model_id}")
            for model_id, rates in models.items()
        }

    meta = raw.get("_meta") if isinstance(raw.get("_meta"), dict) else {}
    return PricingTable(prices=prices, meta=meta)


def _parse_rates(rates: Any, path: str) -> ModelPricing:
    if not isinstance(rates, dict):
        raise ValueError(f"Rates for {path} must be a dictionary")

    allowed_keys = {"input", "output", "cache_read", "cache_write", "reasoning"}
    unknown_keys = set(rates.keys()) - allowed_keys
    if unknown_keys:
        raise ValueError(f"Unknown rate keys in {path}: {unknown_keys}")

    values = {}
    for key, value in rates.items():
        if isinstance(value, bool) or not isinstance(value, (int, float)) or value < 0:
            raise ValueError(f"Rate '{key}' in {path} must be a non-negative number")
        values[key] = Decimal(str(value))

    return ModelPricing(**values)
