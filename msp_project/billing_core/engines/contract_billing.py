"""
Contract Billing Model Engine.

Pure functions with deterministic behavior. No I/O.

Calculates the recurring monthly charge of a contract from its billing
configuration and a snapshot of the client's directory (assets and
contacts assigned to the contract). The same config, snapshot and date
always produce the same line items and the same Decimal total, which is
what makes dry-run previews and automated invoice generation safe.

Supported billing models:
- fixed        one static recurring line
- per_asset    rate x asset count per asset type (+ one-time setup fees)
- per_contact  rate per contact, by access tier name
- tiered       volume priced against ascending thresholds (cliff or graduated)
- hybrid       sum of whichever of the above sections are configured

Usage:
    config = ContractBillingConfig(
        billing_model=PER_ASSET,
        asset_rules=parse_asset_rules({"workstation": {"rate": "10"}}),
    )
    snapshot = ClientSnapshot(client_id=1, assets=(...,))
    charge = calculate_monthly_charge(config, snapshot, date(2025, 10, 1))
"""

import datetime
import logging
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import FrozenSet, List, Optional, Tuple

from django.core.exceptions import ValidationError

from ..exceptions import NotFoundError
from .money import ZERO, quantize_money, sum_money, to_decimal

logger = logging.getLogger(__name__)


# ============================================================================
# Constants
# ============================================================================

FIXED = "fixed"
PER_ASSET = "per_asset"
PER_CONTACT = "per_contact"
TIERED = "tiered"
HYBRID = "hybrid"

BILLING_MODEL_CHOICES = [
    (FIXED, "Fixed"),
    (PER_ASSET, "Per asset"),
    (PER_CONTACT, "Per contact"),
    (TIERED, "Tiered"),
    (HYBRID, "Hybrid"),
]

# whole volume at the rate of the tier it lands in
TIER_CLIFF = "cliff"
# each band of the volume at its own tier's rate
TIER_GRADUATED = "graduated"

TIER_POLICY_CHOICES = [
    (TIER_CLIFF, "Cliff (single rate for entire volume)"),
    (TIER_GRADUATED, "Graduated (per-band rates)"),
]

BASIS_ASSETS = "assets"
BASIS_CONTACTS = "contacts"

TIER_BASIS_CHOICES = [
    (BASIS_ASSETS, "Assets"),
    (BASIS_CONTACTS, "Contacts"),
]

ONE = Decimal("1")


# ============================================================================
# Value Objects
# ============================================================================


@dataclass(frozen=True)
class AssetRule:
    asset_type: str
    rate: Decimal
    setup_fee: Decimal = ZERO
    # empty = every service type
    service_types: Tuple[str, ...] = ()

    def covers(self, asset: "AssetSnapshot") -> bool:
        if asset.asset_type != self.asset_type:
            return False
        return not self.service_types or asset.service_type in self.service_types


@dataclass(frozen=True)
class AccessTier:
    name: str
    rate: Decimal
    permissions: Tuple[str, ...] = ()


@dataclass(frozen=True)
class VolumeTier:
    from_quantity: int
    rate: Decimal
    name: str = ""


@dataclass(frozen=True)
class ContractBillingConfig:
    billing_model: str
    monthly_amount: Optional[Decimal] = None
    description: str = "Monthly service"
    asset_rules: Tuple[AssetRule, ...] = ()
    access_tiers: Tuple[AccessTier, ...] = ()
    volume_tiers: Tuple[VolumeTier, ...] = ()
    tier_basis: Optional[str] = None
    tier_policy: str = TIER_GRADUATED
    start_date: Optional[datetime.date] = None
    end_date: Optional[datetime.date] = None

    @property
    def has_fixed(self) -> bool:
        return self.monthly_amount is not None

    @property
    def has_assets(self) -> bool:
        return bool(self.asset_rules)

    @property
    def has_contacts(self) -> bool:
        return bool(self.access_tiers)

    @property
    def has_tiers(self) -> bool:
        return bool(self.volume_tiers)

    def in_effect(self, on_date: datetime.date) -> bool:
        if self.start_date and on_date < self.start_date:
            return False
        return not (self.end_date and on_date > self.end_date)


@dataclass(frozen=True)
class AssetSnapshot:
    id: int
    asset_type: str
    service_type: Optional[str] = None


@dataclass(frozen=True)
class ContactSnapshot:
    id: int
    name: str = ""
    access_tier: Optional[str] = None


@dataclass(frozen=True)
class ClientSnapshot:
    """Fully hydrated directory data for one contract and billing cycle."""
    client_id: int
    assets: Tuple[AssetSnapshot, ...] = ()
    contacts: Tuple[ContactSnapshot, ...] = ()
    # assets attached since the previous billing cycle (setup fees)
    new_asset_ids: FrozenSet[int] = frozenset()


@dataclass(frozen=True)
class ChargeLine:
    description: str
    quantity: Decimal
    rate: Decimal
    amount: Decimal


@dataclass(frozen=True)
class MonthlyCharge:
    line_items: Tuple[ChargeLine, ...]
    total: Decimal
    # contacts whose tier name matches no configured tier
    unmatched_contacts: Tuple[int, ...] = ()


# ============================================================================
# Parsing stored JSON configuration
# ============================================================================


def _decimal_field(raw, key, label, default=None) -> Decimal:
    value = raw.get(key, default) if isinstance(raw, dict) else None
    if value in (None, ""):
        if default is not None:
            return to_decimal(default)
        raise ValidationError(f"{label}: '{key}' is required")
    try:
        return to_decimal(value)
    except InvalidOperation:
        raise ValidationError(f"{label}: '{key}' must be a number, got {value!r}")


def parse_asset_rules(raw) -> Tuple[AssetRule, ...]:
    """{"workstation": {"rate": 10, "setup_fee": 25, "service_types": [...]}}"""
    if not raw:
        return ()
    if not isinstance(raw, dict):
        raise ValidationError("asset_billing_rules must map asset type to a rule")
    rules = []
    # sorted so line items come out in the same order every time
    for asset_type in sorted(raw):
        rule = raw[asset_type]
        label = f"Asset rule {asset_type!r}"
        if not isinstance(rule, dict):
            raise ValidationError(f"{label} must be an object")
        rules.append(AssetRule(
            asset_type=asset_type,
            rate=_decimal_field(rule, "rate", label),
            setup_fee=_decimal_field(rule, "setup_fee", label, default="0"),
            service_types=tuple(rule.get("service_types") or ()),
        ))
    return tuple(rules)


def parse_access_tiers(raw) -> Tuple[AccessTier, ...]:
    """[{"name": "Standard", "rate": 5, "permissions": [...]}, ...] (order kept)"""
    if not raw:
        return ()
    if not isinstance(raw, (list, tuple)):
        raise ValidationError("contact_access_tiers must be a list")
    tiers = []
    for i, tier in enumerate(raw, start=1):
        label = f"Access tier #{i}"
        if not isinstance(tier, dict) or not tier.get("name"):
            raise ValidationError(f"{label} needs a name")
        tiers.append(AccessTier(
            name=str(tier["name"]),
            rate=_decimal_field(tier, "rate", label),
            permissions=tuple(tier.get("permissions") or ()),
        ))
    return tuple(tiers)


def parse_volume_tiers(raw) -> Tuple[VolumeTier, ...]:
    """[{"from_quantity": 1, "rate": 12}, {"from_quantity": 11, "rate": 10}]"""
    if not raw:
        return ()
    if not isinstance(raw, (list, tuple)):
        raise ValidationError("volume_tiers must be a list")
    tiers = []
    for i, tier in enumerate(raw, start=1):
        label = f"Volume tier #{i}"
        if not isinstance(tier, dict):
            raise ValidationError(f"{label} must be an object")
        try:
            from_quantity = int(tier.get("from_quantity"))
        except (TypeError, ValueError):
            raise ValidationError(f"{label}: 'from_quantity' must be an integer")
        tiers.append(VolumeTier(
            from_quantity=from_quantity,
            rate=_decimal_field(tier, "rate", label),
            name=str(tier.get("name") or ""),
        ))
    return tuple(tiers)


# ============================================================================
# Validation
# ============================================================================


def validate_billing_config(config: ContractBillingConfig):
    """Populated sections must match the billing model."""
    errors: List[str] = []
    model = config.billing_model
    sections = {
        FIXED: config.has_fixed,
        PER_ASSET: config.has_assets,
        PER_CONTACT: config.has_contacts,
        TIERED: config.has_tiers,
    }

    if model in sections:
        if not sections[model]:
            errors.append(f"{model} contracts must define their {_SECTION_LABELS[model]}")
        extra = [_SECTION_LABELS[m] for m, present in sections.items() if present and m != model]
        if extra:
            errors.append(f"{model} contracts cannot define {', '.join(extra)}")
    elif model == HYBRID:
        if not any(sections.values()):
            errors.append("hybrid contracts must configure at least one billing section")
    else:
        errors.append(f"Unknown billing model {model!r}")

    if config.has_fixed and config.monthly_amount < 0:
        errors.append("Monthly amount must be >= 0")

    for rule in config.asset_rules:
        if rule.rate < 0 or rule.setup_fee < 0:
            errors.append(f"Asset rule {rule.asset_type!r} cannot have negative amounts")

    names = [t.name for t in config.access_tiers]
    if len(names) != len(set(names)):
        errors.append("Contact access tier names must be unique")
    for tier in config.access_tiers:
        if tier.rate < 0:
            errors.append(f"Access tier {tier.name!r} cannot have a negative rate")

    if config.has_tiers:
        errors.extend(_volume_tier_errors(config))

    if errors:
        raise ValidationError(errors)


_SECTION_LABELS = {
    FIXED: "monthly amount",
    PER_ASSET: "asset billing rules",
    PER_CONTACT: "contact access tiers",
    TIERED: "volume tier thresholds",
}


def _volume_tier_errors(config: ContractBillingConfig) -> List[str]:
    errors = []
    if config.tier_basis not in (BASIS_ASSETS, BASIS_CONTACTS):
        errors.append("Tiered billing needs a tier basis (assets or contacts)")
    if config.tier_policy not in (TIER_CLIFF, TIER_GRADUATED):
        errors.append(f"Unknown tier policy {config.tier_policy!r}")
    thresholds = [t.from_quantity for t in config.volume_tiers]
    if thresholds[0] != 1:
        errors.append("The first volume tier must start at quantity 1")
    if any(b <= a for a, b in zip(thresholds, thresholds[1:])):
        errors.append("Volume tier thresholds must be strictly ascending")
    if any(t.rate < 0 for t in config.volume_tiers):
        errors.append("Volume tiers cannot have negative rates")
    return errors


# ============================================================================
# Section calculators
# ============================================================================


def _line(description: str, quantity, rate) -> ChargeLine:
    quantity = to_decimal(quantity)
    rate = to_decimal(rate)
    return ChargeLine(
        description=description,
        quantity=quantity,
        rate=rate,
        amount=quantize_money(quantity * rate),
    )


def _fixed_lines(config: ContractBillingConfig) -> List[ChargeLine]:
    return [_line(config.description, ONE, config.monthly_amount)]


def _asset_lines(config: ContractBillingConfig, snapshot: ClientSnapshot) -> List[ChargeLine]:
    lines = []
    for rule in config.asset_rules:
        covered = [a for a in snapshot.assets if rule.covers(a)]
        if not covered:
            continue
        lines.append(_line(rule.asset_type, len(covered), rule.rate))
        if rule.setup_fee > 0:
            new = [a for a in covered if a.id in snapshot.new_asset_ids]
            if new:
                lines.append(_line(f"{rule.asset_type} setup", len(new), rule.setup_fee))
    return lines


def _contact_lines(config: ContractBillingConfig, snapshot: ClientSnapshot,
                   strict: bool) -> Tuple[List[ChargeLine], Tuple[int, ...]]:
    counts = {tier.name: 0 for tier in config.access_tiers}
    unmatched = []
    for contact in sorted(snapshot.contacts, key=lambda c: c.id):
        if not contact.access_tier:
            continue  # contact has no tier assigned
        if contact.access_tier in counts:
            counts[contact.access_tier] += 1
        else:
            unmatched.append(contact.id)

    if unmatched:
        logger.warning("Contacts %s reference unknown access tiers", unmatched)
        if strict:
            raise NotFoundError(f"No contact access tier configured for contacts {unmatched}")

    lines = [
        _line(f"{tier.name} contact access", counts[tier.name], tier.rate)
        for tier in config.access_tiers
        if counts[tier.name]
    ]
    return lines, tuple(unmatched)


def _tier_label(config: ContractBillingConfig, tier: VolumeTier, upper: Optional[int]) -> str:
    if tier.name:
        return tier.name
    basis = config.tier_basis.capitalize()
    if upper is None:
        return f"{basis} {tier.from_quantity}+"
    return f"{basis} {tier.from_quantity}-{upper}"


def _tier_lines(config: ContractBillingConfig, snapshot: ClientSnapshot) -> List[ChargeLine]:
    if config.tier_basis == BASIS_ASSETS:
        volume = len(snapshot.assets)
    else:
        volume = len(snapshot.contacts)
    if volume <= 0:
        return []

    tiers = config.volume_tiers
    if config.tier_policy == TIER_CLIFF:
        # the highest tier whose threshold the volume reached
        tier_index = max(i for i, t in enumerate(tiers) if t.from_quantity <= volume)
        tier = tiers[tier_index]
        upper = tiers[tier_index + 1].from_quantity - 1 if tier_index + 1 < len(tiers) else None
        return [_line(_tier_label(config, tier, upper), volume, tier.rate)]

    lines = []
    for i, tier in enumerate(tiers):
        if tier.from_quantity > volume:
            break
        upper = tiers[i + 1].from_quantity - 1 if i + 1 < len(tiers) else None
        band_end = volume if upper is None else min(volume, upper)
        lines.append(_line(_tier_label(config, tier, upper), band_end - tier.from_quantity + 1, tier.rate))
    return lines


# ============================================================================
# Core function
# ============================================================================


def calculate_monthly_charge(config: ContractBillingConfig, snapshot: ClientSnapshot,
                             as_of: datetime.date, *, strict_tiers: bool = False) -> MonthlyCharge:
    """
    Monthly charge of a contract.

    Pure function: no side effects, no I/O, deterministic output.

    Raises:
        ValidationError: configuration does not match the billing model
        NotFoundError: strict_tiers and a contact references an unknown tier
    """
    validate_billing_config(config)

    if not config.in_effect(as_of):
        logger.debug("Contract not in effect on %s, no charge", as_of)
        return MonthlyCharge(line_items=(), total=ZERO)

    model = config.billing_model
    lines: List[ChargeLine] = []
    unmatched: Tuple[int, ...] = ()

    if model in (FIXED, HYBRID) and config.has_fixed:
        lines.extend(_fixed_lines(config))
    if model in (PER_ASSET, HYBRID) and config.has_assets:
        lines.extend(_asset_lines(config, snapshot))
    if model in (PER_CONTACT, HYBRID) and config.has_contacts:
        contact_lines, unmatched = _contact_lines(config, snapshot, strict_tiers)
        lines.extend(contact_lines)
    if model in (TIERED, HYBRID) and config.has_tiers:
        lines.extend(_tier_lines(config, snapshot))

    total = sum_money(line.amount for line in lines)
    logger.debug("Monthly charge for client %s: %s lines, total %s",
                 snapshot.client_id, len(lines), total)
    return MonthlyCharge(line_items=tuple(lines), total=total, unmatched_contacts=unmatched)
