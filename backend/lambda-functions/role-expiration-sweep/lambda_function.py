"""
Role Expiration Sweep Lambda
Runs the reminder/expiry sweep over temporary role grants on a schedule
"""
import asyncio
import json
import os
import logging
from typing import Dict, Any, Optional

logger = logging.getLogger()
logger.setLevel(logging.INFO)

import boto3
from botocore.exceptions import ClientError

from role_lifecycle.shared.errors import RoleLifecycleError
from role_lifecycle.shared.rbac import LifecycleConfig, RoleLifecycleEngine

# Cache for webhook API key
_api_key_cache: Optional[str] = None


def lambda_handler(event, context):
    """
    Lambda handler for the scheduled expiration sweep

    EventBridge invokes this with an empty payload; a manual invocation may
    pass {"filter": "3day" | "1day" | "expired" | "all", "preview": bool}
    """
    try:
        logger.info(f"Event: {json.dumps(event, default=str)}")

        event = event or {}
        sweep_filter = event.get('filter', 'all')
        preview = parse_flag(event.get('preview', False))

        engine = build_engine()
        result = asyncio.run(engine.run_expiration_sweep(sweep_filter, preview=preview))

        return success_response(result.to_dict())

    except RoleLifecycleError as e:
        logger.error(f"Sweep rejected: {e.message}")
        return error_response(e.message, e.code.value, e.status_code)
    except Exception as e:
        logger.error(f"Error: {str(e)}", exc_info=True)
        return error_response(str(e))


def parse_flag(value: Any) -> bool:
    """Read a boolean from an event field that may arrive as a string"""
    if isinstance(value, str):
        return value.strip().lower() in ('true', '1', 'yes')
    return bool(value)


def build_engine() -> RoleLifecycleEngine:
    """
    Build an engine from the Lambda environment, with the webhook API key
    resolved from Secrets Manager when it is not set directly
    """
    config = LifecycleConfig.from_env()
    if config.notification_webhook_url and not config.notification_api_key:
        config.notification_api_key = get_notification_api_key()
    return RoleLifecycleEngine(config=config)


def get_notification_api_key() -> Optional[str]:
    """
    Get notification webhook API key from Secrets Manager (with caching)
    """
    global _api_key_cache

    # Return cached key if available
    if _api_key_cache:
        return _api_key_cache

    # Check environment variable first (for local testing)
    api_key = os.getenv("ROLE_NOTIFICATION_API_KEY")
    if api_key:
        _api_key_cache = api_key
        return _api_key_cache

    secret_name = os.getenv("ROLE_NOTIFICATION_SECRET_NAME")
    if not secret_name:
        logger.warning("ROLE_NOTIFICATION_SECRET_NAME not set; webhook calls are unauthenticated")
        return None

    try:
        session = boto3.session.Session()
        client = session.client(service_name='secretsmanager')

        get_secret_value_response = client.get_secret_value(SecretId=secret_name)

        # Secret is stored as JSON with an api_key field
        secret_str = get_secret_value_response['SecretString']
        credentials = json.loads(secret_str)

        _api_key_cache = credentials.get('api_key')
        logger.info("Notification API key loaded from Secrets Manager")

        return _api_key_cache

    except ClientError as e:
        logger.error(f"Failed to get notification API key from Secrets Manager: {e}")
        return None


def success_response(content: Dict[str, Any]) -> Dict[str, Any]:
    """Format a successful sweep result"""
    return {
        'statusCode': 200,
        'body': json.dumps(content, default=str)
    }


def error_response(
    message: str, code: str = 'internal_error', status_code: int = 500
) -> Dict[str, Any]:
    """Format an error response"""
    return {
        'statusCode': status_code,
        'body': json.dumps({'error': {'code': code, 'message': message}})
    }
