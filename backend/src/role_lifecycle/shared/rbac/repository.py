"""Role grant storage: abstract contract, in-memory and DynamoDB implementations."""

import asyncio
import logging
import os
from abc import ABC, abstractmethod
from dataclasses import replace
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from role_lifecycle.shared.errors import (
    ConcurrentModificationError,
    LastAdminError,
    NotFoundError,
    StoreUnavailableError,
)

from .models import GrantPage, Role, RoleGrant, to_iso

logger = logging.getLogger(__name__)


class RoleStore(ABC):
    """
    Durable storage of role grants keyed by (user_id, role).

    Every write is atomic and scoped to a single key. Writes are
    compare-and-set on ``RoleGrant.version`` so that an interactive mutation
    and a concurrent sweep transition on the same grant cannot interleave.
    """

    @abstractmethod
    async def get_grant(self, user_id: str, role: Role) -> Optional[RoleGrant]:
        """Return the grant for (user_id, role), or None."""

    @abstractmethod
    async def upsert_grant(
        self, grant: RoleGrant, expected_version: Optional[int]
    ) -> RoleGrant:
        """
        Create or replace a grant.

        Args:
            grant: The grant to write; its version is ignored
            expected_version: None if the grant must not exist yet, otherwise
                the version the stored grant must currently have

        Returns:
            The stored grant with its new version

        Raises:
            ConcurrentModificationError: If the stored state does not match
            StoreUnavailableError: On infrastructure failure
        """

    @abstractmethod
    async def delete_grant(
        self,
        user_id: str,
        role: Role,
        expected_version: Optional[int] = None,
        require_other_holder: bool = False,
    ) -> RoleGrant:
        """
        Delete a grant and return what was deleted.

        Args:
            user_id: Grant owner
            role: Grant role
            expected_version: If given, delete only if the stored version matches
            require_other_holder: If True, delete only if at least one other
                user holds the same role; checked atomically with the delete

        Raises:
            NotFoundError: If there is no such grant
            LastAdminError: If require_other_holder is set and nobody else holds the role
            ConcurrentModificationError: If expected_version does not match
            StoreUnavailableError: On infrastructure failure
        """

    @abstractmethod
    async def list_grants_expiring_before(
        self, ts: datetime, limit: int = 100, cursor: Optional[Any] = None
    ) -> GrantPage:
        """Page through temporary grants with expires_at < ts, soonest first."""

    @abstractmethod
    async def count_users_with_role(self, role: Role) -> int:
        """Number of users currently holding the role."""

    @abstractmethod
    async def list_grants(self, user_id: Optional[str] = None) -> List[RoleGrant]:
        """List grants for one user, or every grant when user_id is None."""


class InMemoryRoleStore(RoleStore):
    """In-memory grant storage (for single-instance/local development and tests)."""

    def __init__(self):
        self._grants: Dict[Tuple[str, Role], RoleGrant] = {}
        self._lock = asyncio.Lock()

    async def get_grant(self, user_id: str, role: Role) -> Optional[RoleGrant]:
        async with self._lock:
            grant = self._grants.get((user_id, role))
            return replace(grant) if grant else None

    async def upsert_grant(
        self, grant: RoleGrant, expected_version: Optional[int]
    ) -> RoleGrant:
        key = (grant.user_id, grant.role)
        async with self._lock:
            current = self._grants.get(key)
            if expected_version is None and current is not None:
                raise ConcurrentModificationError(
                    f"Grant {grant.grant_id} was created concurrently"
                )
            if expected_version is not None and (
                current is None or current.version != expected_version
            ):
                raise ConcurrentModificationError(
                    f"Grant {grant.grant_id} changed concurrently"
                )

            stored = replace(grant, version=(expected_version or 0) + 1)
            self._grants[key] = stored
            return replace(stored)

    async def delete_grant(
        self,
        user_id: str,
        role: Role,
        expected_version: Optional[int] = None,
        require_other_holder: bool = False,
    ) -> RoleGrant:
        key = (user_id, role)
        async with self._lock:
            current = self._grants.get(key)
            if current is None:
                raise NotFoundError(f"User {user_id} does not hold role '{role.value}'")
            if expected_version is not None and current.version != expected_version:
                raise ConcurrentModificationError(
                    f"Grant {current.grant_id} changed concurrently"
                )
            if require_other_holder:
                others = sum(
                    1 for (uid, r) in self._grants if r == role and uid != user_id
                )
                if others == 0:
                    raise LastAdminError(
                        f"Cannot remove the last '{role.value}' grant",
                        metadata={"userId": user_id, "role": role.value},
                    )
            del self._grants[key]
            return current

    async def list_grants_expiring_before(
        self, ts: datetime, limit: int = 100, cursor: Optional[Any] = None
    ) -> GrantPage:
        async with self._lock:
            candidates = sorted(
                (
                    g
                    for g in self._grants.values()
                    if g.is_temporary and g.expires_at is not None and g.expires_at < ts
                ),
                key=self._sort_key,
            )
        if cursor is not None:
            candidates = [g for g in candidates if self._sort_key(g) > cursor]

        page = [replace(g) for g in candidates[:limit]]
        next_cursor = self._sort_key(page[-1]) if len(candidates) > limit else None
        return GrantPage(grants=page, next_cursor=next_cursor)

    async def count_users_with_role(self, role: Role) -> int:
        async with self._lock:
            return sum(1 for (_, r) in self._grants if r == role)

    async def list_grants(self, user_id: Optional[str] = None) -> List[RoleGrant]:
        async with self._lock:
            grants = [
                replace(g)
                for (uid, _), g in self._grants.items()
                if user_id is None or uid == user_id
            ]
        grants.sort(key=lambda g: (g.user_id, g.role.value))
        return grants

    @staticmethod
    def _sort_key(grant: RoleGrant) -> Tuple[str, str, str]:
        return (to_iso(grant.expires_at), grant.user_id, grant.role.value)


class DynamoDBRoleStore(RoleStore):
    """
    DynamoDB-backed grant storage.

    Item layout (single table):
    - Grant:          PK=USER#{user_id}      SK=ROLE#{role}
    - Holder counter: PK=ROLE_COUNT#{role}   SK=COUNT   (holderCount)

    Temporary grants also carry GSI1PK=TEMPORARY / GSI1SK={expiresAt}, which
    makes ExpiringGrantsIndex a sparse index over temporary grants only.
    Creates and deletes update the holder counter in the same transaction,
    so the last-holder check and the delete commit together.
    """

    EXPIRING_INDEX = "ExpiringGrantsIndex"
    TEMPORARY_PARTITION = "TEMPORARY"

    def __init__(self, table_name: Optional[str] = None, region: Optional[str] = None):
        import boto3
        from botocore.exceptions import ClientError

        self.table_name = table_name or os.environ.get(
            "DYNAMODB_ROLE_GRANTS_TABLE_NAME", "role-grants"
        )
        self.region = region or os.getenv(
            "AWS_REGION", os.getenv("AWS_DEFAULT_REGION", "us-west-2")
        )

        profile = os.getenv("AWS_PROFILE")
        if profile:
            session = boto3.Session(profile_name=profile)
            self._dynamodb = session.resource("dynamodb", region_name=self.region)
        else:
            self._dynamodb = boto3.resource("dynamodb", region_name=self.region)

        self._table = self._dynamodb.Table(self.table_name)
        self._client_error = ClientError

        logger.info(
            f"Initialized DynamoDB role store: table={self.table_name}, region={self.region}"
        )

    # =========================================================================
    # Core Operations
    # =========================================================================

    async def get_grant(self, user_id: str, role: Role) -> Optional[RoleGrant]:
        try:
            response = self._table.get_item(
                Key=self._grant_key(user_id, role), ConsistentRead=True
            )
        except self._client_error as e:
            logger.error(f"Error getting grant {user_id}:{role.value}: {e}")
            raise StoreUnavailableError(f"Role store unavailable: {e}")

        item = response.get("Item")
        return RoleGrant.from_dict(item) if item else None

    async def upsert_grant(
        self, grant: RoleGrant, expected_version: Optional[int]
    ) -> RoleGrant:
        stored = replace(grant, version=(expected_version or 0) + 1)
        item = self._build_grant_item(stored)

        try:
            if expected_version is None:
                # New holder: the grant and the counter move together
                self._dynamodb.meta.client.transact_write_items(
                    TransactItems=[
                        {
                            "Put": {
                                "TableName": self.table_name,
                                "Item": item,
                                "ConditionExpression": "attribute_not_exists(PK)",
                            }
                        },
                        self._counter_update(stored.role, delta=1),
                    ]
                )
            else:
                self._table.put_item(
                    Item=item,
                    ConditionExpression="attribute_exists(PK) AND version = :v",
                    ExpressionAttributeValues={":v": expected_version},
                )
        except self._client_error as e:
            code = e.response["Error"]["Code"]
            if code in ("TransactionCanceledException", "ConditionalCheckFailedException"):
                raise ConcurrentModificationError(
                    f"Grant {grant.grant_id} changed concurrently"
                )
            logger.error(f"Error writing grant {grant.grant_id}: {e}")
            raise StoreUnavailableError(f"Role store unavailable: {e}")

        logger.debug(f"Stored grant {stored.grant_id} at version {stored.version}")
        return stored

    async def delete_grant(
        self,
        user_id: str,
        role: Role,
        expected_version: Optional[int] = None,
        require_other_holder: bool = False,
    ) -> RoleGrant:
        current = await self.get_grant(user_id, role)
        if current is None:
            raise NotFoundError(f"User {user_id} does not hold role '{role.value}'")
        if expected_version is not None and current.version != expected_version:
            raise ConcurrentModificationError(
                f"Grant {current.grant_id} changed concurrently"
            )

        try:
            self._dynamodb.meta.client.transact_write_items(
                TransactItems=[
                    {
                        "Delete": {
                            "TableName": self.table_name,
                            "Key": self._grant_key(user_id, role),
                            "ConditionExpression": "attribute_exists(PK) AND version = :v",
                            "ExpressionAttributeValues": {":v": current.version},
                        }
                    },
                    self._counter_update(
                        role, delta=-1, require_other_holder=require_other_holder
                    ),
                ]
            )
        except self._client_error as e:
            if e.response["Error"]["Code"] != "TransactionCanceledException":
                logger.error(f"Error deleting grant {current.grant_id}: {e}")
                raise StoreUnavailableError(f"Role store unavailable: {e}")

            reasons = [r.get("Code") for r in e.response.get("CancellationReasons", [])]
            if len(reasons) > 1 and reasons[1] == "ConditionalCheckFailed":
                raise LastAdminError(
                    f"Cannot remove the last '{role.value}' grant",
                    metadata={"userId": user_id, "role": role.value},
                )
            raise ConcurrentModificationError(
                f"Grant {current.grant_id} changed concurrently"
            )

        return current

    async def list_grants_expiring_before(
        self, ts: datetime, limit: int = 100, cursor: Optional[Any] = None
    ) -> GrantPage:
        query_kwargs: Dict[str, Any] = {
            "IndexName": self.EXPIRING_INDEX,
            "KeyConditionExpression": "GSI1PK = :pk AND GSI1SK < :ts",
            "ExpressionAttributeValues": {
                ":pk": self.TEMPORARY_PARTITION,
                ":ts": to_iso(ts),
            },
            "Limit": limit,
        }
        if cursor is not None:
            query_kwargs["ExclusiveStartKey"] = cursor

        try:
            response = self._table.query(**query_kwargs)
        except self._client_error as e:
            logger.error(f"Error querying expiring grants before {to_iso(ts)}: {e}")
            raise StoreUnavailableError(f"Role store unavailable: {e}")

        return GrantPage(
            grants=[RoleGrant.from_dict(item) for item in response.get("Items", [])],
            next_cursor=response.get("LastEvaluatedKey"),
        )

    async def count_users_with_role(self, role: Role) -> int:
        try:
            response = self._table.get_item(
                Key=self._counter_key(role), ConsistentRead=True
            )
        except self._client_error as e:
            logger.error(f"Error reading holder count for {role.value}: {e}")
            raise StoreUnavailableError(f"Role store unavailable: {e}")

        item = response.get("Item") or {}
        return int(item.get("holderCount", 0))

    async def list_grants(self, user_id: Optional[str] = None) -> List[RoleGrant]:
        try:
            if user_id is not None:
                response = self._table.query(
                    KeyConditionExpression="PK = :pk AND begins_with(SK, :sk)",
                    ExpressionAttributeValues={
                        ":pk": f"USER#{user_id}",
                        ":sk": "ROLE#",
                    },
                )
                items = response.get("Items", [])
            else:
                scan_kwargs = {
                    "FilterExpression": "begins_with(PK, :pk)",
                    "ExpressionAttributeValues": {":pk": "USER#"},
                }
                response = self._table.scan(**scan_kwargs)
                items = response.get("Items", [])

                # Handle pagination
                while "LastEvaluatedKey" in response:
                    response = self._table.scan(
                        ExclusiveStartKey=response["LastEvaluatedKey"], **scan_kwargs
                    )
                    items.extend(response.get("Items", []))
        except self._client_error as e:
            logger.error(f"Error listing grants (user={user_id}): {e}")
            raise StoreUnavailableError(f"Role store unavailable: {e}")

        grants = [RoleGrant.from_dict(item) for item in items]
        grants.sort(key=lambda g: (g.user_id, g.role.value))
        return grants

    # =========================================================================
    # Helper Methods
    # =========================================================================

    @staticmethod
    def _grant_key(user_id: str, role: Role) -> Dict[str, str]:
        return {"PK": f"USER#{user_id}", "SK": f"ROLE#{role.value}"}

    @staticmethod
    def _counter_key(role: Role) -> Dict[str, str]:
        return {"PK": f"ROLE_COUNT#{role.value}", "SK": "COUNT"}

    def _build_grant_item(self, grant: RoleGrant) -> Dict[str, Any]:
        item = {
            **self._grant_key(grant.user_id, grant.role),
            **{k: v for k, v in grant.to_dict().items() if v is not None},
        }
        if grant.is_temporary and grant.expires_at is not None:
            item["GSI1PK"] = self.TEMPORARY_PARTITION
            item["GSI1SK"] = to_iso(grant.expires_at)
        return item

    def _counter_update(
        self, role: Role, delta: int, require_other_holder: bool = False
    ) -> Dict[str, Any]:
        update: Dict[str, Any] = {
            "TableName": self.table_name,
            "Key": self._counter_key(role),
            "UpdateExpression": "ADD holderCount :delta",
            "ExpressionAttributeValues": {":delta": delta},
        }
        if require_other_holder:
            update["ConditionExpression"] = "holderCount > :one"
            update["ExpressionAttributeValues"][":one"] = 1
        return {"Update": update}


def create_role_store(table_name: Optional[str] = None) -> RoleStore:
    """
    Create appropriate role store based on environment configuration.

    Returns:
        RoleStore instance (DynamoDB if configured, otherwise in-memory)
    """
    table_name = table_name or os.getenv("DYNAMODB_ROLE_GRANTS_TABLE_NAME")

    if table_name:
        return DynamoDBRoleStore(table_name=table_name)

    logger.info(
        "DYNAMODB_ROLE_GRANTS_TABLE_NAME not set. Using in-memory role store. "
        "Grants will not survive a restart."
    )
    return InMemoryRoleStore()
