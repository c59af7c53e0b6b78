"""Default notification copy per type, with {placeholder} interpolation."""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from typing import Any

PLACEHOLDER_PATTERN = re.compile(r"\{(\w+)\}")


class NotificationType(Enum):
    INVITE_SUCCESS = "invite_success"
    REWARD_RECEIVED = "reward_received"
    INVITE_PROGRESS = "invite_progress"
    INVITE_CODE_EXPIRING = "invite_code_expiring"
    MILESTONE_ACHIEVED = "milestone_achieved"
    CREDITS_EXPIRING = "credits_expiring"
    WEEKLY_SUMMARY = "weekly_summary"
    MONTHLY_REPORT = "monthly_report"


@dataclass(frozen=True)
class Template:
    title: str
    content: str


TEMPLATES: dict[str, Template] = {
    NotificationType.INVITE_SUCCESS.value: Template(
        title="Invitation accepted!",
        content="{invitee_name} joined through your invitation. You earned {reward_amount} AI credits.",
    ),
    NotificationType.REWARD_RECEIVED.value: Template(
        title="Reward received",
        content="You received a new reward: {reward_amount} {reward_type}.",
    ),
    NotificationType.INVITE_PROGRESS.value: Template(
        title="Invitation progress",
        content="{invitee_name} is now active. You have {invite_count} successful invitations so far.",
    ),
    NotificationType.INVITE_CODE_EXPIRING.value: Template(
        title="Your invite code is expiring",
        content="Invite code {invite_code} expires in {days_left} days. Share it before it lapses!",
    ),
    NotificationType.MILESTONE_ACHIEVED.value: Template(
        title="Milestone reached!",
        content="You reached the {milestone_name} milestone and earned {reward_description}.",
    ),
    NotificationType.CREDITS_EXPIRING.value: Template(
        title="Credits expiring soon",
        content="{expiring_credits} of your AI credits expire within {days_left} days.",
    ),
    NotificationType.WEEKLY_SUMMARY.value: Template(
        title="Your weekly invitation summary",
        content="This week you invited {weekly_invites} people and earned {weekly_rewards} credits.",
    ),
    NotificationType.MONTHLY_REPORT.value: Template(
        title="Your monthly invitation report",
        content="You ranked #{monthly_rank} this month with {monthly_invites} invitations.",
    ),
}


def interpolate(text: str, data: dict[str, Any]) -> str:
    """Replace {placeholder} tokens. Unknown placeholders are left as-is."""

    def replacer(match: re.Match) -> str:
        key = match.group(1)
        if key not in data or data[key] is None:
            return match.group(0)
        return str(data[key])

    return PLACEHOLDER_PATTERN.sub(replacer, text)


def render(notification_type: str, data: dict[str, Any] | None = None) -> tuple[str, str]:
    """(title, content) for a notification type.

    Raises:
        ValueError: Unknown notification type.
    """
    template = TEMPLATES.get(NotificationType(notification_type).value)
    if template is None:
        msg = f"No template for notification type {notification_type!r}"
        raise ValueError(msg)
    data = data or {}
    return interpolate(template.title, data), interpolate(template.content, data)
