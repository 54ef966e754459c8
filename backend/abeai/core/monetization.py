"""Free-tier usage gate and upsell copy."""

from typing import List, Optional

from abeai.config import get_settings
from abeai.core.config_types import PillarConfig, RulesConfig
from abeai.core.i18n import get_localized
from abeai.schemas.session import SessionRecord, Tier


def counts_usage(record: SessionRecord) -> bool:
    """Only free-tier answers count towards the limit."""
    return record.tier == Tier.FREE


def limit_reached(record: SessionRecord) -> bool:
    """Check whether a free-tier user has used up their generated answers."""
    settings = get_settings()
    return counts_usage(record) and record.usage_count >= settings.free_response_limit


def upgrade_buttons(rules: RulesConfig, record: SessionRecord) -> List[dict]:
    """Plans above the user's tier, plus Australian clinical links for Australians."""
    return [
        button.to_dict()
        for button in rules.upsell.plan_buttons
        if button.visible_for(record.tier.value, record.is_australian)
    ]


def limit_message(rules: RulesConfig, locale: str) -> str:
    return get_localized(rules.upsell.limit_message, locale)


def soft_upsell(
    rules: RulesConfig,
    record: SessionRecord,
    pillar: Optional[PillarConfig],
    locale: str,
) -> tuple[str, List[dict]]:
    """
    Footer text and buttons appended to a generated answer.

    Returns:
        (footer, buttons); both empty for tiers that are not upsold.
    """
    upsell = rules.upsell
    if record.tier.value not in upsell.footer_tiers:
        return "", []

    buttons = []
    if pillar and pillar.support_url:
        buttons.append({"text": pillar.support_label or pillar.name.title(), "url": pillar.support_url})
    else:
        buttons.append(upsell.explore_button.to_dict())

    if upsell.clinic_button.visible_for(record.tier.value, record.is_australian):
        buttons.append(upsell.clinic_button.to_dict())

    return get_localized(upsell.footer, locale), buttons
