from typing import Any, Dict, Optional, Protocol

import structlog

from ...core.database.models.collection_db import CollectionTaskModel

logger = structlog.get_logger(__name__)

CHANNELS = {
    "statement": "mail",
    "reminder_call": "phone",
    "payment_plan_offer": "email",
    "escalation": "agency",
}


class CollectionActionDispatcher(Protocol):
    """Delivers a collection action to the outside world (print vendor, dialer, agency)."""

    async def dispatch(
        self, task: CollectionTaskModel, statement: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        ...


class LoggingActionDispatcher:
    """Records the action in the log. Used until a delivery integration is configured."""

    async def dispatch(
        self, task: CollectionTaskModel, statement: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        channel = CHANNELS.get(task.action_type, "manual")
        logger.info(
            "Collection action dispatched",
            task_id=task.id,
            account_id=task.account_id,
            action_type=task.action_type,
            channel=channel,
            statement_id=statement["statement_id"] if statement else None,
        )
        result: Dict[str, Any] = {"dispatched": True, "channel": channel}
        if statement:
            result["statement_id"] = statement["statement_id"]
        return result
