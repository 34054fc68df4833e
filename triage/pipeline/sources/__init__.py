"""
Source Adapters

One adapter per inbound collaboration surface. Each adapter verifies
request authenticity and converts provider events to a NormalizedDiscussion.

Available Adapters:
- SlackAdapter: chat threads (Events API)
- FigmaAdapter: design-review comments (FILE_COMMENT webhooks)
- EmailAdapter: forwarded email (Svix-signed inbound webhooks)
"""

from typing import Dict, Type

from ...common.errors import ValidationError
from ...common.schemas import SourceType
from .base import SourceAdapter, RawRequest, DiscoveredUser
from .email import EmailAdapter
from .figma import FigmaAdapter
from .slack import SlackAdapter

ADAPTERS: Dict[SourceType, Type[SourceAdapter]] = {
    SourceType.SLACK: SlackAdapter,
    SourceType.FIGMA: FigmaAdapter,
    SourceType.EMAIL: EmailAdapter,
}


def get_adapter(source_type, tolerance_seconds: int = 300) -> SourceAdapter:
    """
    Select the adapter for a source type.

    Raises:
        ValidationError: unknown source type
    """
    try:
        adapter_cls = ADAPTERS[SourceType(source_type)]
    except ValueError:
        raise ValidationError(f"unknown source type: {source_type}")
    return adapter_cls(tolerance_seconds=tolerance_seconds)


__all__ = [
    "ADAPTERS",
    "DiscoveredUser",
    "EmailAdapter",
    "FigmaAdapter",
    "RawRequest",
    "SlackAdapter",
    "SourceAdapter",
    "get_adapter",
]
