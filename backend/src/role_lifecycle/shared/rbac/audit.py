"""Append-only audit log of role lifecycle mutations."""

import asyncio
import logging
import os
from abc import ABC, abstractmethod
from typing import List, Optional

from role_lifecycle.shared.errors import StoreUnavailableError

from .models import AuditRecord, Role, to_iso

logger = logging.getLogger(__name__)


class AuditLog(ABC):
    """Abstract interface for audit record storage."""

    @abstractmethod
    async def append(self, record: AuditRecord) -> None:
        """
        Durably append one record. Records are never edited or deleted.

        Raises:
            StoreUnavailableError: If the write could not be made durable
        """


class InMemoryAuditLog(AuditLog):
    """In-memory audit log (for single-instance/local development and tests)."""

    def __init__(self):
        self._records: List[AuditRecord] = []
        self._lock = asyncio.Lock()

    async def append(self, record: AuditRecord) -> None:
        async with self._lock:
            self._records.append(record)

    def list_records(
        self, user_id: Optional[str] = None, role: Optional[Role] = None
    ) -> List[AuditRecord]:
        """Records in append order, optionally narrowed to one user and/or role."""
        return [
            r
            for r in self._records
            if (user_id is None or r.user_id == user_id)
            and (role is None or r.role == role)
        ]


class DynamoDBAuditLog(AuditLog):
    """
    DynamoDB-backed audit log.

    One partition per grant (PK=GRANT#{user_id}#{role}); the sort key
    {timestamp}#{id} keeps records ordered by creation time within a grant.
    """

    def __init__(self, table_name: Optional[str] = None, region: Optional[str] = None):
        import boto3
        from botocore.exceptions import ClientError

        self.table_name = table_name or os.environ.get(
            "DYNAMODB_ROLE_AUDIT_TABLE_NAME", "role-audit-log"
        )
        self.region = region or os.getenv(
            "AWS_REGION", os.getenv("AWS_DEFAULT_REGION", "us-west-2")
        )
        self._table = boto3.resource("dynamodb", region_name=self.region).Table(
            self.table_name
        )
        self._client_error = ClientError

        logger.info(
            f"Initialized DynamoDB audit log: table={self.table_name}, region={self.region}"
        )

    async def append(self, record: AuditRecord) -> None:
        item = {
            "PK": f"GRANT#{record.user_id}#{record.role.value}",
            "SK": f"{to_iso(record.timestamp)}#{record.id}",
            **{k: v for k, v in record.to_dict().items() if v is not None},
        }
        try:
            self._table.put_item(
                Item=item, ConditionExpression="attribute_not_exists(SK)"
            )
        except self._client_error as e:
            logger.error(f"Failed to append audit record {record.id}: {e}")
            raise StoreUnavailableError(f"Audit log unavailable: {e}")


def create_audit_log(table_name: Optional[str] = None) -> AuditLog:
    """
    Create appropriate audit log based on environment configuration.

    Returns:
        AuditLog instance (DynamoDB if configured, otherwise in-memory)
    """
    table_name = table_name or os.getenv("DYNAMODB_ROLE_AUDIT_TABLE_NAME")

    if table_name:
        return DynamoDBAuditLog(table_name=table_name)

    logger.info(
        "DYNAMODB_ROLE_AUDIT_TABLE_NAME not set. Using in-memory audit log."
    )
    return InMemoryAuditLog()
