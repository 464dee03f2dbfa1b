"""S3 tools — bucket and object access via boto3.

boto3 is blocking; the registry runs these handlers in a worker thread.
Credentials come from the standard AWS chain (env, profile, instance role).
"""

from __future__ import annotations

import logging
from typing import Any

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from . import ToolError

log = logging.getLogger(__name__)

_region: str = ""
_client: Any = None
_max_object_bytes: int = 1024 * 1024


def configure(region: str = "", client: Any = None, max_object_bytes: int = 1024 * 1024) -> None:
    global _region, _client, _max_object_bytes
    _region = region
    _client = client
    _max_object_bytes = max_object_bytes


def _get_s3():
    global _client
    if _client is None:
        _client = boto3.client(
            "s3",
            region_name=_region or None,
            config=BotoConfig(retries={"max_attempts": 3, "mode": "standard"}),
        )
    return _client


def _fail(action: str, e: Exception) -> ToolError:
    if isinstance(e, ClientError):
        code = e.response.get("Error", {}).get("Code", "Unknown")
        return ToolError(f"Failed to {action}: {code}")
    return ToolError(f"Failed to {action}: {e}")


def tool_s3_health_check() -> str:
    try:
        buckets = _get_s3().list_buckets().get("Buckets", [])
    except (BotoCoreError, ClientError) as e:
        raise ToolError(
            f"S3 connection failed: {e}. Check AWS credentials and that AWS_REGION is set "
            f"(currently: {_region or 'unset'})"
        ) from e
    return f"S3 connected successfully ({len(buckets)} buckets visible)"


def tool_list_buckets() -> str:
    try:
        buckets = _get_s3().list_buckets().get("Buckets", [])
    except (BotoCoreError, ClientError) as e:
        raise _fail("list buckets", e) from e
    if not buckets:
        return "No buckets found"
    return "Buckets:\n" + "\n".join(f"- {b['Name']}" for b in buckets)


def tool_list_objects(bucket: str, prefix: str = "") -> str:
    try:
        resp = _get_s3().list_objects_v2(Bucket=bucket, Prefix=prefix or "")
    except (BotoCoreError, ClientError) as e:
        raise _fail(f"list objects in {bucket}", e) from e
    objects = resp.get("Contents", [])
    if not objects:
        return f"Bucket {bucket} has no objects" + (f" under {prefix}" if prefix else "")
    lines = [f"- {o['Key']} ({o.get('Size', 0)} bytes)" for o in objects]
    if resp.get("IsTruncated"):
        lines.append("[listing truncated]")
    return f"Objects in {bucket}:\n" + "\n".join(lines)


def tool_get_object(bucket: str, key: str) -> str:
    try:
        resp = _get_s3().get_object(Bucket=bucket, Key=key)
        body = resp["Body"]
        try:
            data = body.read(_max_object_bytes + 1)
        finally:
            body.close()
    except (BotoCoreError, ClientError) as e:
        raise _fail(f"get {bucket}/{key}", e) from e
    truncated = len(data) > _max_object_bytes
    text = data[:_max_object_bytes].decode("utf-8", errors="replace")
    if truncated:
        text += f"\n[truncated at {_max_object_bytes} bytes]"
    return text


def tool_put_object(bucket: str, key: str, content: str) -> str:
    try:
        _get_s3().put_object(Bucket=bucket, Key=key, Body=content.encode("utf-8"))
    except (BotoCoreError, ClientError) as e:
        raise _fail(f"put {bucket}/{key}", e) from e
    return f"Uploaded {bucket}/{key} ({len(content.encode('utf-8'))} bytes)"


def tool_delete_object(bucket: str, key: str) -> str:
    try:
        _get_s3().delete_object(Bucket=bucket, Key=key)
    except (BotoCoreError, ClientError) as e:
        raise _fail(f"delete {bucket}/{key}", e) from e
    return f"Deleted {bucket}/{key}"


_BUCKET = {"type": "string", "description": "Bucket name"}
_KEY = {"type": "string", "description": "Object key"}

TOOLS = [
    {
        "name": "s3_health_check",
        "description": "Check S3 connectivity and AWS credentials.",
        "input_schema": {"type": "object", "properties": {}},
        "function": tool_s3_health_check,
    },
    {
        "name": "list_buckets",
        "description": "List S3 buckets.",
        "input_schema": {"type": "object", "properties": {}},
        "function": tool_list_buckets,
    },
    {
        "name": "list_objects",
        "description": "List objects in a bucket.",
        "input_schema": {
            "type": "object",
            "properties": {
                "bucket": _BUCKET,
                "prefix": {"type": "string", "description": "Key prefix filter"},
            },
            "required": ["bucket"],
        },
        "function": tool_list_objects,
    },
    {
        "name": "get_object",
        "description": "Read an object as text (first 1 MiB).",
        "input_schema": {
            "type": "object",
            "properties": {"bucket": _BUCKET, "key": _KEY},
            "required": ["bucket", "key"],
        },
        "function": tool_get_object,
    },
    {
        "name": "put_object",
        "description": "Write text content to an object.",
        "input_schema": {
            "type": "object",
            "properties": {
                "bucket": _BUCKET,
                "key": _KEY,
                "content": {"type": "string", "description": "Object content"},
            },
            "required": ["bucket", "key", "content"],
        },
        "function": tool_put_object,
    },
    {
        "name": "delete_object",
        "description": "Delete an object.",
        "input_schema": {
            "type": "object",
            "properties": {"bucket": _BUCKET, "key": _KEY},
            "required": ["bucket", "key"],
        },
        "function": tool_delete_object,
    },
]
