from database import database
from stocrx.models.activity import ActivityLog, ActivityAction
from typing import Optional, Dict, Any
import logging

logger = logging.getLogger(__name__)

def calculate_diff(before: Dict[str, Any], after: Dict[str, Any]) -> Dict[str, Any]:
    """Calculate the differences between before and after states.

    Returns a dict with:
    - added: fields that exist in after but not in before
    - removed: fields that exist in before but not in after
    - changed: fields that exist in both but have different values
    """
    if not before and not after:
        return {}

    if not before:
        return {"added": after, "removed": {}, "changed": {}}

    if not after:
        return {"added": {}, "removed": before, "changed": {}}

    diff = {"added": {}, "removed": {}, "changed": {}}

    for key in set(before.keys()) | set(after.keys()):
        before_val = before.get(key)
        after_val = after.get(key)

        if key not in before:
            diff["added"][key] = after_val
        elif key not in after:
            diff["removed"][key] = before_val
        elif before_val != after_val:
            diff["changed"][key] = {
                "from": before_val,
                "to": after_val
            }

    # Remove empty categories
    return {k: v for k, v in diff.items() if v}

async def create_activity_log(
    action: ActivityAction,
    entity_type: Optional[str] = None,
    entity_id: Optional[str] = None,
    actor: Optional[str] = None,
    details: Optional[str] = None,
    before_state: Optional[Dict[str, Any]] = None,
    after_state: Optional[Dict[str, Any]] = None,
    metadata: Optional[Dict[str, Any]] = None,
    auto_diff: bool = True
) -> str:
    """Append an activity log entry with optional automatic diff.

    Args:
        action: The activity type
        entity_type: "vehicle", "subscription", "payment" or "claim"
        entity_id: ID of the affected record
        actor: Admin / customer / "system"
        details: Human readable summary for the admin feed
        before_state: State before the change
        after_state: State after the change
        metadata: Additional metadata
        auto_diff: If True, calculate and store the before/after diff
    """
    try:
        db = database.get_db()

        diff = None
        if auto_diff and before_state and after_state:
            diff = calculate_diff(before_state, after_state)

        enriched_metadata = metadata.copy() if metadata else {}
        if diff:
            enriched_metadata["diff"] = diff

        entry = ActivityLog(
            action=action,
            entity_type=entity_type,
            entity_id=entity_id,
            actor=actor or "system",
            details=details,
            before_state=before_state,
            after_state=after_state,
            metadata=enriched_metadata if enriched_metadata else None,
        )

        await db.activity_logs.insert_one(entry.model_dump())
        logger.info(f"Activity log created: {action.value} {entity_type or ''} {entity_id or ''}".rstrip())
        return entry.activity_id
    except Exception as e:
        logger.error(f"Failed to create activity log: {e}")
        # Never fail the main operation due to activity log failure
        return ""
