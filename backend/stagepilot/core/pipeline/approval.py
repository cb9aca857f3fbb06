"""
Approval detection and stage summaries.

The agent gateway is expected to say whether a reply asks for sign-off.
Older agents only hint at it in the reply text; the sentinel scan below
reads those hints and is used only when no explicit flag was given.
"""

from typing import Iterable, Optional

from stagepilot.core.models import Message, MessageRole

APPROVAL_SENTINEL = "[APPROVAL_NEEDED]"
APPROVAL_PHRASE = 'please click the "approve" button'

REQUIREMENTS_SUMMARY_HEADER = "Requirements Summary:"


def detect_approval_request(text: str) -> bool:
    """Check reply text for a legacy approval marker."""
    if APPROVAL_SENTINEL in text:
        return True
    return APPROVAL_PHRASE in text.lower()


def resolve_approval_needed(
    explicit: Optional[bool],
    content: str,
    sentinel_fallback: bool = True,
) -> bool:
    """
    Decide whether a reply puts the stage into WAITING_FOR_APPROVAL.

    An explicit flag from the gateway always wins, including an explicit
    False over a reply that happens to contain the marker.
    """
    if explicit is not None:
        return explicit
    if sentinel_fallback:
        return detect_approval_request(content)
    return False


def build_requirements_summary(messages: Iterable[Message]) -> str:
    """Newline-joined contents of the user's messages, with a header."""
    user_lines = [m.content for m in messages if m.role == MessageRole.USER]
    return "\n".join([REQUIREMENTS_SUMMARY_HEADER, *user_lines])
