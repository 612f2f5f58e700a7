# =============================================================================
# DynamoDB Session Backend
# =============================================================================
# Stores context sessions in a DynamoDB table so chained interactions can
# land on different function instances (Lambda and friends).
#
# Items:
#   SESSION#<correlation id>   originUser, data (map), createdAt, expiresAt, ttl
#   LINK#<interaction id>      correlationId, expiresAt, ttl
#
# The table's TTL attribute should be set to "ttl" so DynamoDB drops
# expired items on its own; expired() therefore reports nothing to sweep.
# =============================================================================

import logging
from decimal import Decimal
from typing import Any, Dict, Optional

from botocore.exceptions import ClientError

from src.interactions.context_store import ContextSession
from src.interactions.errors import ContextStoreError

logger = logging.getLogger(__name__)

SESSION_PREFIX = "SESSION#"
LINK_PREFIX = "LINK#"


def _to_dynamo(value: Any) -> Any:
    """Floats are not accepted by boto3; convert recursively to Decimal."""
    if isinstance(value, float):
        return Decimal(str(value))
    if isinstance(value, dict):
        return {k: _to_dynamo(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_to_dynamo(v) for v in value]
    return value


def _from_dynamo(value: Any) -> Any:
    if isinstance(value, Decimal):
        return int(value) if value == value.to_integral_value() else float(value)
    if isinstance(value, dict):
        return {k: _from_dynamo(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_from_dynamo(v) for v in value]
    return value


class DynamoSessionBackend:
    """Session backend over a boto3 DynamoDB Table resource."""

    def __init__(self, table, pk_name: str = "pk"):
        self.table = table
        self.pk_name = pk_name

    def _key(self, prefix: str, value: str) -> Dict[str, str]:
        return {self.pk_name: f"{prefix}{value}"}

    def put_session(self, session: ContextSession) -> None:
        item = {
            **self._key(SESSION_PREFIX, session.correlation_id),
            "originUser": session.origin_user,
            "data": _to_dynamo(session.data),
            "createdAt": _to_dynamo(session.created_at),
            "expiresAt": _to_dynamo(session.expires_at),
            "ttl": int(session.expires_at),
        }
        try:
            self.table.put_item(Item=item)
        except ClientError as e:
            logger.exception(f"Failed to store session {session.correlation_id}: {e}")
            raise ContextStoreError(str(e)) from e

    def load_session(self, correlation_id: str) -> Optional[ContextSession]:
        try:
            response = self.table.get_item(Key=self._key(SESSION_PREFIX, correlation_id), ConsistentRead=True)
        except ClientError as e:
            logger.exception(f"Failed to load session {correlation_id}: {e}")
            raise ContextStoreError(str(e)) from e

        item = response.get("Item")
        if not item:
            return None
        return ContextSession(
            correlation_id=correlation_id,
            origin_user=item.get("originUser", ""),
            data=_from_dynamo(item.get("data", {})),
            created_at=float(item.get("createdAt", 0)),
            expires_at=float(item.get("expiresAt", 0)),
        )

    def delete_session(self, correlation_id: str) -> bool:
        try:
            self.table.delete_item(Key=self._key(SESSION_PREFIX, correlation_id))
            return True
        except ClientError as e:
            logger.exception(f"Failed to delete session {correlation_id}: {e}")
            return False

    def merge_data(self, correlation_id: str, partial: Dict[str, Any]) -> Optional[ContextSession]:
        """One UpdateItem call, so the merge is applied atomically."""
        if not partial:
            return self.load_session(correlation_id)

        update_expr_parts = []
        expr_names = {"#data": "data", "#pk": self.pk_name}
        expr_values = {}
        for i, (key, value) in enumerate(partial.items()):
            update_expr_parts.append(f"#data.#k{i} = :v{i}")
            expr_names[f"#k{i}"] = key
            expr_values[f":v{i}"] = _to_dynamo(value)

        try:
            response = self.table.update_item(
                Key=self._key(SESSION_PREFIX, correlation_id),
                UpdateExpression="SET " + ", ".join(update_expr_parts),
                ConditionExpression="attribute_exists(#pk)",
                ExpressionAttributeNames=expr_names,
                ExpressionAttributeValues=expr_values,
                ReturnValues="ALL_NEW",
            )
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") == "ConditionalCheckFailedException":
                return None
            logger.exception(f"Failed to merge session {correlation_id}: {e}")
            raise ContextStoreError(str(e)) from e

        item = response.get("Attributes", {})
        return ContextSession(
            correlation_id=correlation_id,
            origin_user=item.get("originUser", ""),
            data=_from_dynamo(item.get("data", {})),
            created_at=float(item.get("createdAt", 0)),
            expires_at=float(item.get("expiresAt", 0)),
        )

    def put_link(self, interaction_id: str, correlation_id: str, expires_at: float) -> None:
        try:
            self.table.put_item(Item={
                **self._key(LINK_PREFIX, interaction_id),
                "correlationId": correlation_id,
                "expiresAt": _to_dynamo(expires_at),
                "ttl": int(expires_at),
            })
        except ClientError as e:
            logger.exception(f"Failed to link interaction {interaction_id}: {e}")
            raise ContextStoreError(str(e)) from e

    def load_link(self, interaction_id: str) -> Optional[tuple]:
        try:
            response = self.table.get_item(Key=self._key(LINK_PREFIX, interaction_id))
        except ClientError as e:
            logger.exception(f"Failed to load link {interaction_id}: {e}")
            raise ContextStoreError(str(e)) from e
        item = response.get("Item")
        if not item:
            return None
        return item["correlationId"], float(item.get("expiresAt", 0))

    def delete_link(self, interaction_id: str) -> None:
        try:
            self.table.delete_item(Key=self._key(LINK_PREFIX, interaction_id))
        except ClientError as e:
            logger.exception(f"Failed to delete link {interaction_id}: {e}")

    def expired(self, now: float) -> tuple:
        # DynamoDB TTL removes expired items; reads still check expiresAt
        return [], []
