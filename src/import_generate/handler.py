"""
import_generate.handler — First stage of the chat-log import.

Reads the cursor, pulls every chat record past it from DynamoDB, embeds each
user message with Bedrock Titan, stages the batch as one JSON document in
S3, advances the cursor and fires import-execute asynchronously.

The cursor moves *before* the load runs.  A load that never completes
leaves its records behind the cursor (at-most-once here); a load that is
retried or duplicated is absorbed by ON CONFLICT DO NOTHING downstream.

Not safe to run concurrently: two invocations would read the same cursor.
Triggered by a single operator action.
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

import boto3
from analytics_core import AnalyticsError, ImportCursorMissing, ParameterStore
from analytics_core.embeddings import DEFAULT_CONCURRENCY, DEFAULT_MODEL_ID, TitanEmbedder
from analytics_core.invocation import is_http_event, render, render_error, render_exception
from analytics_core.models import STAGING_PREFIX, ChatLogRecord, epoch_millis
from aws_lambda_powertools import Logger, Tracer
from boto3.dynamodb.conditions import Attr, Key
from botocore.exceptions import ClientError

logger = Logger(service="import-generate")
tracer = Tracer(service="import-generate")

_CHAT_LOGS_TABLE_ENV = "CHAT_LOGS_TABLE"
_LOG_TYPE_ENV = "LOG_TYPE"
_STAGING_BUCKET_ENV = "STAGING_BUCKET"
_CURSOR_PARAM_ENV = "IMPORT_CURSOR_PARAM"
_EXECUTE_FUNCTION_ENV = "IMPORT_EXECUTE_FUNCTION_NAME"
_EMBED_MODEL_ENV = "EMBED_MODEL_ID"
_EMBED_CONCURRENCY_ENV = "EMBED_CONCURRENCY"


@dataclass(frozen=True)
class ImportGenerateDependencies:
    dynamodb: Any
    s3: Any
    lambda_client: Any
    params: ParameterStore
    embedder: TitanEmbedder


def _dependencies() -> ImportGenerateDependencies:
    region = os.environ.get("AWS_REGION", "eu-west-2")
    session = boto3.session.Session(region_name=region)
    bedrock_region = os.environ.get("BEDROCK_REGION", region)
    return ImportGenerateDependencies(
        dynamodb=session.resource("dynamodb"),
        s3=session.client("s3"),
        lambda_client=session.client("lambda"),
        params=ParameterStore(ssm_client=session.client("ssm")),
        embedder=TitanEmbedder(
            bedrock_client=session.client("bedrock-runtime", region_name=bedrock_region),
            model_id=os.environ.get(_EMBED_MODEL_ENV, DEFAULT_MODEL_ID),
            concurrency=int(os.environ.get(_EMBED_CONCURRENCY_ENV, DEFAULT_CONCURRENCY)),
        ),
    )


def _now_utc() -> datetime:
    return datetime.now(UTC)


def _chat_logs_table() -> str:
    return os.environ.get(_CHAT_LOGS_TABLE_ENV, "cv-chat-logs")


def _log_type() -> str:
    return os.environ.get(_LOG_TYPE_ENV, "CVCHAT")


def _cursor_param() -> str:
    return os.environ.get(_CURSOR_PARAM_ENV, "/nakom.is/analytics/CVCHAT/last-imported-timestamp")


def _required_env(name: str) -> str:
    value = os.environ.get(name, "").strip()
    if not value:
        raise RuntimeError(f"{name} environment variable not set")
    return value


def read_cursor(deps: ImportGenerateDependencies) -> str:
    cursor = deps.params.get_optional(_cursor_param())
    if cursor is None:
        raise ImportCursorMissing(_cursor_param())
    return cursor


def fetch_new_items(deps: ImportGenerateDependencies, cursor: str) -> list[dict[str, Any]]:
    """Every chat record with sk > cursor, oldest first, across all result pages.

    SMS_SENT sentinel records share the partition but carry no userMessage.
    """
    table = deps.dynamodb.Table(_chat_logs_table())
    kwargs: dict[str, Any] = {
        "KeyConditionExpression": Key("logType").eq(_log_type()) & Key("sk").gt(cursor),
        "FilterExpression": Attr("userMessage").exists(),
    }
    items: list[dict[str, Any]] = []
    while True:
        response = table.query(**kwargs)
        items.extend(response.get("Items", []))
        last_key = response.get("LastEvaluatedKey")
        if not last_key:
            return items
        kwargs["ExclusiveStartKey"] = last_key


def build_records(
    deps: ImportGenerateDependencies, items: list[dict[str, Any]]
) -> list[ChatLogRecord]:
    messages = [str(item.get("userMessage") or "") for item in items]
    embeddings = deps.embedder.embed_many(messages)
    return [
        ChatLogRecord.from_source_item(item, embedding)
        for item, embedding in zip(items, embeddings, strict=True)
    ]


def stage_batch(deps: ImportGenerateDependencies, bucket: str, records: list[ChatLogRecord]) -> str:
    staging_key = f"{STAGING_PREFIX}{epoch_millis(_now_utc())}.json"
    deps.s3.put_object(
        Bucket=bucket,
        Key=staging_key,
        Body=json.dumps([r.to_staged() for r in records]).encode("utf-8"),
        ContentType="application/json",
    )
    return staging_key


def queue_execute(deps: ImportGenerateDependencies, bucket: str, staging_key: str) -> None:
    deps.lambda_client.invoke(
        FunctionName=_required_env(_EXECUTE_FUNCTION_ENV),
        InvocationType="Event",
        Payload=json.dumps({"stagingBucket": bucket, "stagingKey": staging_key}).encode("utf-8"),
    )


def generate(deps: ImportGenerateDependencies) -> dict[str, Any]:
    bucket = _required_env(_STAGING_BUCKET_ENV)
    cursor = read_cursor(deps)
    logger.append_keys(cursor=cursor)

    items = fetch_new_items(deps, cursor)
    if not items:
        logger.info("No new records past cursor")
        return {"imported": 0}

    records = build_records(deps, items)
    new_cursor = max([cursor, *(r.id for r in records)])

    staging_key = stage_batch(deps, bucket, records)
    logger.append_keys(staging_key=staging_key)

    deps.params.put(_cursor_param(), new_cursor)
    logger.info("Cursor advanced", new_cursor=new_cursor, records=len(records))

    queue_execute(deps, bucket, staging_key)
    return {"queued": len(records), "stagingKey": staging_key}


@logger.inject_lambda_context(clear_state=True, log_event=False)
@tracer.capture_lambda_handler
def lambda_handler(event: dict[str, Any] | None, _context: Any) -> Any:
    is_http = is_http_event(event or {})
    try:
        return render(is_http, generate(_dependencies()))
    except AnalyticsError as exc:
        logger.warning("Import generate rejected", error=str(exc), code=exc.code)
        return render_exception(is_http, exc)
    except ClientError as exc:
        logger.exception("AWS client error in import-generate")
        return render_error(is_http, 500, "AWS_CLIENT_ERROR", str(exc))
    except Exception as exc:
        logger.exception("Unhandled import-generate error")
        return render_error(is_http, 500, "INTERNAL_ERROR", str(exc) or "Internal server error")
