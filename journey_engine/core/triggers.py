"""Matching of incoming contact events against workflow trigger nodes."""

from typing import Any, Dict, Optional, Tuple

from ..models.core import TriggerConfig

CONTACT_REPLIED = "contact_replied"
TAG_APPLIED = "tag_applied"
CONTACT_ADDED = "contact_added"
CUSTOM_FIELD_CHANGED = "custom_field_changed"
WEBHOOK_RECEIVED = "webhook_received"
DATE_TIME = "date_time"


def trigger_matches(config: TriggerConfig, event_type: str,
                    data: Optional[Dict[str, Any]] = None) -> Tuple[bool, Optional[str]]:
    """
    Decide whether an event starts a workflow with this trigger.

    Filters in ``trigger_config``:

    - ``tag_applied``: ``tag_ids`` limits which applied ``tag_id`` counts
    - ``contact_added``: ``list_ids`` (or ``tag_ids``) limits the ``list_id`` joined
    - ``custom_field_changed``: ``field_name`` must match, and ``field_value`` too when set

    ``date_time`` triggers never match an event; the scheduler starts them.

    Returns:
        ``(matched, reason)`` where ``reason`` explains a non-match
    """
    data = data or {}
    filters = config.trigger_config or {}

    if config.trigger_type != event_type:
        return False, "Trigger type mismatch"

    if event_type == TAG_APPLIED:
        tag_ids = filters.get("tag_ids") or []
        if tag_ids and data.get("tag_id") not in tag_ids:
            return False, "Tag not in trigger filter"

    elif event_type == CONTACT_ADDED:
        list_ids = filters.get("list_ids") or filters.get("tag_ids") or []
        if list_ids and data.get("list_id") and data["list_id"] not in list_ids:
            return False, "List not in trigger filter"

    elif event_type == CUSTOM_FIELD_CHANGED:
        field_name = filters.get("field_name")
        if field_name:
            if data.get("field_name") != field_name:
                return False, "Field not in trigger filter"
            expected = filters.get("field_value")
            if expected not in (None, "") and data.get("field_value") != expected:
                return False, "Field value does not match trigger filter"

    elif event_type == DATE_TIME:
        return False, "Scheduled triggers are not started by events"

    return True, None
