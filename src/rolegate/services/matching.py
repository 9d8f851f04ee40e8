"""Pure rule-matching predicate.

A rule holds up to four criteria: collection slug, channel scope, one
attribute pair and a minimum item count. Each optional criterion is either
``ANY`` (wildcard) or ``Exact(value)``; storage sentinels are mapped once in
``RuleCriteria.from_rule`` so matching never has to interpret ``'ALL'``,
empty strings or NULLs.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, Final, Generic, TypeVar

from rolegate.models.rule import WILDCARD, VerifierRule

T = TypeVar("T")


class Wildcard:
    """Criterion that matches any value."""

    _instance: Wildcard | None = None

    def __new__(cls) -> Wildcard:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "ANY"


ANY: Final[Wildcard] = Wildcard()


@dataclass(frozen=True)
class Exact(Generic[T]):
    """Criterion that matches a single concrete value."""

    value: T


Criterion = Wildcard | Exact[T]


def text_criterion(raw: str | None) -> Criterion[str]:
    """Map a stored text column to a criterion. NULL, '' and 'ALL' are wildcards."""
    if raw is None or raw in ("", WILDCARD):
        return ANY
    return Exact(raw)


@dataclass(frozen=True)
class Asset:
    """One item held by a wallet, as reported by the asset index."""

    slug: str
    attributes: Mapping[str, str] = field(default_factory=dict)

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> Asset:
        """Build an asset from an index record; accepts ``attributes`` or ``values``."""
        raw_attrs = payload.get("attributes")
        if raw_attrs is None:
            raw_attrs = payload.get("values")
        attributes: dict[str, str] = {}
        if isinstance(raw_attrs, Mapping):
            attributes = {
                str(key): str(value) for key, value in raw_attrs.items() if value is not None
            }
        return cls(slug=str(payload.get("slug") or ""), attributes=attributes)


@dataclass(frozen=True)
class RuleCriteria:
    """Normalised matching criteria of a rule."""

    slug: Criterion[str] = ANY
    channel: Criterion[str] = ANY
    attribute_key: Criterion[str] = ANY
    attribute_value: Criterion[str] = ANY
    min_items: int | None = None

    @classmethod
    def from_rule(cls, rule: VerifierRule) -> RuleCriteria:
        return cls(
            slug=text_criterion(rule.slug),
            channel=ANY if rule.channel_id is None else Exact(rule.channel_id),
            attribute_key=text_criterion(rule.attribute_key),
            attribute_value=text_criterion(rule.attribute_value),
            min_items=rule.min_items,
        )

    @property
    def attribute_pair(self) -> tuple[str, str] | None:
        """Return (key, value) when both are concrete, else None."""
        if isinstance(self.attribute_key, Exact) and isinstance(self.attribute_value, Exact):
            return self.attribute_key.value, self.attribute_value.value
        return None


@dataclass(frozen=True)
class PerRuleResult:
    rule_id: int
    is_valid: bool
    matching_asset_count: int


def _slug_ok(criteria: RuleCriteria, asset: Asset) -> bool:
    if isinstance(criteria.slug, Wildcard):
        return True
    return asset.slug == criteria.slug.value


def _attribute_ok(criteria: RuleCriteria, asset: Asset) -> bool:
    pair = criteria.attribute_pair
    if pair is None:
        return True
    key, value = pair
    held = asset.attributes.get(key)
    return held is not None and held.lower() == value.lower()


def slug_matches(criteria: RuleCriteria, assets: Iterable[Asset]) -> bool:
    if isinstance(criteria.slug, Wildcard):
        return True
    return any(_slug_ok(criteria, asset) for asset in assets)


def channel_matches(criteria: RuleCriteria, channel_id: str | None) -> bool:
    if isinstance(criteria.channel, Wildcard):
        return True
    return criteria.channel.value == channel_id


def attribute_matches(criteria: RuleCriteria, assets: Iterable[Asset]) -> bool:
    if criteria.attribute_pair is None:
        return True
    return any(_attribute_ok(criteria, asset) for asset in assets)


def min_items_matches(criteria: RuleCriteria, assets: Sequence[Asset]) -> bool:
    # Gated on the total holding count, not on slug/attribute matches.
    if criteria.min_items is None or criteria.min_items <= 0:
        return True
    return len(assets) >= criteria.min_items


def matches(criteria: RuleCriteria, assets: Sequence[Asset], channel_id: str | None) -> bool:
    """Return True if ``assets`` held in ``channel_id`` satisfy every criterion."""
    return (
        slug_matches(criteria, assets)
        and channel_matches(criteria, channel_id)
        and attribute_matches(criteria, assets)
        and min_items_matches(criteria, assets)
    )


def count_matching_assets(criteria: RuleCriteria, assets: Iterable[Asset]) -> int:
    """Count assets passing both the slug and attribute criteria. Reporting only."""
    return sum(
        1 for asset in assets if _slug_ok(criteria, asset) and _attribute_ok(criteria, asset)
    )


def evaluate(rule: VerifierRule, assets: Sequence[Asset], channel_id: str | None) -> PerRuleResult:
    """Evaluate one stored rule against a wallet's holdings."""
    criteria = RuleCriteria.from_rule(rule)
    return PerRuleResult(
        rule_id=rule.id,
        is_valid=matches(criteria, assets, channel_id),
        matching_asset_count=count_matching_assets(criteria, assets),
    )
