"""
Choice label parsing.

Option labels on the ballot combine a service provider name with a budget
tier, e.g. ``"sp b - basic"`` or ``"sp b - ext"``. A single special label
("None below") marks the voter's cutoff.
"""

import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Sequence

try:
    from .models import BudgetTier, ElectionDataError, Option
except ImportError:
    from analysis.models import BudgetTier, ElectionDataError, Option

logger = logging.getLogger(__name__)

TIER_SEPARATOR = " - "
STOP_MARKER_LABELS = ("none below", "none of the below")
EXTENDED_TOKENS = ("ext", "extended")


@dataclass(frozen=True)
class ParsedChoice:
    provider_name: str
    budget_tier: BudgetTier


def _normalize_label(label: str) -> str:
    return re.sub(r"\s+", " ", label.strip().lower())


def is_stop_marker(label: Any) -> bool:
    """Check whether a label is the "None below" cutoff marker."""
    return _normalize_label(str(label)) in STOP_MARKER_LABELS


def parse_choice_name(label: Any) -> ParsedChoice:
    """
    Parse an option label into provider name and budget tier.

    Examples:
        "sp a"           -> ("sp a", basic)
        "sp b - basic"   -> ("sp b", basic)
        "sp b - ext"     -> ("sp b", extended)
        "None below"     -> ("None below", none)

    Args:
        label: Raw option label

    Returns:
        ParsedChoice with provider name and tier
    """
    label = "" if label is None else str(label)

    if is_stop_marker(label):
        return ParsedChoice(label, BudgetTier.NONE)

    if TIER_SEPARATOR in label:
        provider, token = label.rsplit(TIER_SEPARATOR, 1)
        tier = (
            BudgetTier.EXTENDED
            if token.strip().lower() in EXTENDED_TOKENS
            else BudgetTier.BASIC
        )
        return ParsedChoice(provider.strip(), tier)

    return ParsedChoice(label.strip(), BudgetTier.BASIC)


def is_same_provider(label_1: str, label_2: str) -> bool:
    """Two labels share a provider; the cutoff marker is always its own group."""
    if is_stop_marker(label_1) or is_stop_marker(label_2):
        return False
    return parse_choice_name(label_1).provider_name == parse_choice_name(label_2).provider_name


def group_choices_by_provider(labels: Sequence[str]) -> Dict[str, List[str]]:
    """Group labels by provider name, preserving first-seen order."""
    groups: Dict[str, List[str]] = {}
    for label in labels:
        groups.setdefault(parse_choice_name(label).provider_name, []).append(label)
    return groups


def build_options(
    labels: Sequence[str], provider_metadata: Mapping[str, Mapping[str, Any]]
) -> List[Option]:
    """
    Build the canonical option list from labels and provider metadata.

    Args:
        labels: Option labels in ballot order (position + 1 is the option id)
        provider_metadata: provider name -> {basic_amount, extended_amount,
            long_stream_eligible}

    Returns:
        List of Option objects
    """
    if not labels:
        raise ElectionDataError("No options supplied")

    options = []
    for position, label in enumerate(labels, 1):
        parsed = parse_choice_name(label)

        if parsed.budget_tier == BudgetTier.NONE:
            options.append(
                Option(
                    id=position,
                    label=label,
                    provider_name=parsed.provider_name,
                    budget_tier=BudgetTier.NONE,
                    is_stop_marker=True,
                )
            )
            continue

        metadata = provider_metadata.get(parsed.provider_name)
        if metadata is None:
            logger.warning(
                f"No budget metadata for provider '{parsed.provider_name}' "
                f"(option {position}: {label}); defaulting to 0 and not eligible"
            )
            metadata = {}

        amount_key = (
            "extended_amount"
            if parsed.budget_tier == BudgetTier.EXTENDED
            else "basic_amount"
        )
        options.append(
            Option(
                id=position,
                label=label,
                provider_name=parsed.provider_name,
                budget_tier=parsed.budget_tier,
                budget_amount=float(metadata.get(amount_key) or 0.0),
                is_long_stream_eligible=bool(metadata.get("long_stream_eligible", False)),
            )
        )

    stop_markers = [o for o in options if o.is_stop_marker]
    if len(stop_markers) > 1:
        logger.warning(
            f"Found {len(stop_markers)} cutoff markers; only option "
            f"{stop_markers[0].id} will act as the cutoff"
        )

    logger.info(f"Built {len(options)} options ({len(stop_markers)} cutoff marker)")
    return options


def find_stop_marker(options: Sequence[Option]):
    """Return the first cutoff marker option, or None."""
    return next((o for o in options if o.is_stop_marker), None)
