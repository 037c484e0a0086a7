"""Slack mirror for workflow notices."""

import logging
from dataclasses import dataclass

from slack_sdk import WebClient
from slack_sdk.errors import SlackApiError

logger = logging.getLogger(__name__)


class SlackError(Exception):
    """Raised when a notice cannot be posted to Slack."""


@dataclass
class PostedNotice:
    channel: str
    ts: str


def send_message(
    token: str | None,
    channel: str,
    text: str,
    blocks: list[dict] | None = None,
) -> PostedNotice:
    """Post ``text`` to ``channel``; ``text`` doubles as the push-notification fallback."""
    if not token:
        raise SlackError("Slack is not configured (SLACK_BOT_TOKEN is empty)")
    if not channel:
        raise SlackError("Slack is not configured (GW_SLACK_CHANNEL is empty)")

    try:
        response = WebClient(token=token).chat_postMessage(channel=channel, text=text, blocks=blocks)
    except SlackApiError as e:
        raise SlackError(f"Slack rejected the post to {channel}: {e.response.get('error')}") from e

    logger.debug("Posted notice to %s (ts=%s)", channel, response["ts"])
    return PostedNotice(channel=response["channel"], ts=response["ts"])


NOTICE_EMOJI = {
    "NEW_CHECKIN": ":memo:",
    "NEW_TASK": ":wrench:",
    "TASK_REMINDER": ":alarm_clock:",
    "TASK_STARTED_ADMIN": ":hammer_and_wrench:",
    "TASK_CLAIMED": ":hammer_and_wrench:",
    "TASK_COMPLETED": ":white_check_mark:",
    "TASK_APPROVED": ":white_check_mark:",
    "TASK_REJECTED": ":x:",
    "APPOINTMENT_APPROVED": ":calendar:",
    "APPOINTMENT_REJECTED": ":x:",
    "APPOINTMENT_CANCELLED": ":x:",
    "PROPOSAL_PENDING": ":moneybag:",
    "PROPOSAL_RECEIVED": ":moneybag:",
    "PROPOSAL_REJECTED": ":x:",
    "PROPOSAL_UPDATE": ":moneybag:",
}


def format_notice(
    title: str,
    message: str,
    notice_type: str,
    reference_id: str | None = None,
    recipients: list[str] | None = None,
) -> list[dict]:
    """Format a workflow notice as Slack blocks."""
    emoji = NOTICE_EMOJI.get(notice_type, ":bell:")
    ref = f"\nRef: `{reference_id}`" if reference_id else ""
    to = f" | For: {', '.join(recipients)}" if recipients else ""

    return [
        {
            "type": "section",
            "text": {
                "type": "mrkdwn",
                "text": f"{emoji} *{title}*\n{message}{ref}",
            },
        },
        {
            "type": "context",
            "elements": [{"type": "mrkdwn", "text": f"`{notice_type}`{to}"}],
        },
    ]
