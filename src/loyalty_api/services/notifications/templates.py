"""Titles and messages for engine notifications."""

from __future__ import annotations

from dataclasses import dataclass

from loyalty_api.models.loyalty import CardTier


@dataclass
class RenderedTemplate:
    title: str
    message: str


def _program_label(program_name: str | None, *, default: str = "the loyalty program") -> str:
    if isinstance(program_name, str) and program_name.strip():
        return program_name.strip()
    return default


def _plural(points: int) -> str:
    return "point" if abs(points) == 1 else "points"


def render_enrollment_request(program_name: str | None) -> RenderedTemplate:
    program = _program_label(program_name)
    return RenderedTemplate(
        title="Program Enrollment Request",
        message=f"You have been invited to join {program}. Accept to receive a loyalty card.",
    )


def render_business_decision(program_name: str | None, *, approved: bool) -> RenderedTemplate:
    """Message to the business once a customer answers its invitation."""

    program = _program_label(program_name, default="loyalty program")
    if approved:
        return RenderedTemplate(
            title="Customer Joined Program",
            message=f"A customer has joined your {program}",
        )
    return RenderedTemplate(
        title="Enrollment Declined",
        message=f"A customer has declined to join your {program}",
    )


def render_customer_decision(program_name: str | None, *, approved: bool) -> RenderedTemplate:
    program = _program_label(program_name)
    if approved:
        return RenderedTemplate(title="Enrollment Success", message=f"You have been enrolled in {program}")
    return RenderedTemplate(title="Enrollment Declined", message=f"You declined to join {program}")


def render_card_created(program_name: str | None, card_number: str) -> RenderedTemplate:
    program = _program_label(program_name)
    return RenderedTemplate(
        title="Loyalty Card Created",
        message=f"Your loyalty card {card_number} for {program} is ready",
    )


def render_points_movement(
    points: int,
    *,
    credited: bool,
    new_balance: int,
    description: str | None = None,
) -> RenderedTemplate:
    unit = _plural(points)
    reason = f" for {description.strip()}" if description and description.strip() else ""
    if credited:
        return RenderedTemplate(
            title="Points Added",
            message=f"You earned {points} {unit}{reason}. New balance: {new_balance}",
        )
    return RenderedTemplate(
        title="Points Deducted",
        message=f"{points} {unit} were deducted{reason}. New balance: {new_balance}",
    )


def render_tier_change(previous: CardTier, current: CardTier) -> RenderedTemplate:
    return RenderedTemplate(
        title="Card Tier Updated",
        message=f"Your card moved from {previous.value.title()} to {current.value.title()}",
    )


def render_consistency_repair(action: str, detail: str) -> RenderedTemplate:
    return RenderedTemplate(
        title="Loyalty Data Repaired",
        message=f"Automatic repair applied ({action.replace('_', ' ').lower()}): {detail}",
    )


__all__ = [
    "RenderedTemplate",
    "render_business_decision",
    "render_card_created",
    "render_consistency_repair",
    "render_customer_decision",
    "render_enrollment_request",
    "render_points_movement",
    "render_tier_change",
]
