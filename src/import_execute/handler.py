"""
import_execute.handler — Second stage of the chat-log import.

Loads one staged batch (written by import-generate) into chat_logs.  Runs in
the VPC next to the database.

Every insert is ON CONFLICT (id) DO NOTHING, so the stage is a set-union over
record ids: re-invoking it with the same payload is the retry story, and
concurrent loads of overlapping batches are safe.  There is no transaction
around the batch; rows inserted before a failure stay.

Payload: {"stagingBucket": str, "stagingKey": str}
Result:  {"inserted": <records attempted>, "newRows": <rows actually added>}
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass
from typing import Any

import boto3
import psycopg
from analytics_core import AnalyticsError, InvalidInvocation, Invocation
from analytics_core.db import ConnectionCache
from analytics_core.invocation import (
    is_http_event,
    parse_invocation,
    render,
    render_error,
    render_exception,
)
from analytics_core.models import EMBEDDING_DIMENSIONS, ChatLogRecord
from aws_lambda_powertools import Logger, Tracer
from botocore.exceptions import ClientError

logger = Logger(service="import-execute")
tracer = Tracer(service="import-execute")

SCHEMA_STATEMENTS: tuple[str, ...] = (
    "CREATE EXTENSION IF NOT EXISTS vector",
    f"""
    CREATE TABLE IF NOT EXISTS chat_logs (
        id              TEXT PRIMARY KEY,
        log_type        TEXT NOT NULL,
        conversation_id TEXT,
        recorded_at     TIMESTAMPTZ NOT NULL,
        ip              TEXT,
        user_agent      TEXT,
        country         TEXT,
        user_message    TEXT,
        message_count   INT,
        tools_called    TEXT[],
        input_tokens    INT,
        output_tokens   INT,
        duration_ms     INT,
        rate_limited    BOOLEAN,
        embedding       vector({EMBEDDING_DIMENSIONS})
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS chat_logs_embedding_idx
    ON chat_logs USING hnsw (embedding vector_cosine_ops)
    """,
)

INSERT_SQL = """
    INSERT INTO chat_logs (id, log_type, conversation_id, recorded_at, ip, user_agent,
        country, user_message, message_count, tools_called, input_tokens, output_tokens,
        duration_ms, rate_limited, embedding)
    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s::vector)
    ON CONFLICT (id) DO NOTHING
"""

# Warm invocations reuse this connection; correctness never depends on it.
_connections = ConnectionCache()


@dataclass(frozen=True)
class ImportExecuteDependencies:
    s3: Any
    connections: ConnectionCache


def _dependencies() -> ImportExecuteDependencies:
    region = os.environ.get("AWS_REGION", "eu-west-2")
    return ImportExecuteDependencies(
        s3=boto3.client("s3", region_name=region),
        connections=_connections,
    )


def read_batch(deps: ImportExecuteDependencies, bucket: str, key: str) -> list[ChatLogRecord]:
    response = deps.s3.get_object(Bucket=bucket, Key=key)
    raw = json.loads(response["Body"].read().decode("utf-8"))
    if not isinstance(raw, list):
        raise InvalidInvocation(f"Staged batch {key!r} is not a JSON array")
    return [ChatLogRecord.from_staged(item) for item in raw]


def ensure_schema(deps: ImportExecuteDependencies, conn: Any) -> None:
    """Create the extension, table and HNSW index if absent.  Once per connection."""
    if deps.connections.schema_ready:
        return
    with conn.cursor() as cur:
        for statement in SCHEMA_STATEMENTS:
            cur.execute(statement)
    deps.connections.schema_ready = True
    logger.info("chat_logs schema ensured")


def _row(record: ChatLogRecord) -> tuple[Any, ...]:
    return (
        record.id,
        record.log_type,
        record.conversation_id,
        record.recorded_at,
        record.ip,
        record.user_agent,
        record.country,
        record.user_message,
        record.message_count,
        record.tools_called,
        record.input_tokens,
        record.output_tokens,
        record.duration_ms,
        record.rate_limited,
        record.embedding_literal(),
    )


def insert_records(conn: Any, records: list[ChatLogRecord]) -> int:
    """Insert every record, skipping ids already present.  Returns rows added."""
    # Shape errors surface before the first insert.
    rows = [_row(record) for record in records]
    added = 0
    with conn.cursor() as cur:
        for row in rows:
            cur.execute(INSERT_SQL, row)
            added += max(cur.rowcount, 0)
    return added


def execute(deps: ImportExecuteDependencies, bucket: str, key: str) -> dict[str, Any]:
    records = read_batch(deps, bucket, key)
    try:
        conn = deps.connections.get()
        ensure_schema(deps, conn)
        added = insert_records(conn, records)
    except psycopg.OperationalError:
        deps.connections.reset()
        raise
    logger.info("Batch loaded", records=len(records), new_rows=added)
    return {"inserted": len(records), "newRows": added}


def _staging_location(invocation: Invocation) -> tuple[str, str]:
    return invocation.require("stagingBucket"), invocation.require("stagingKey")


@logger.inject_lambda_context(clear_state=True, log_event=False)
@tracer.capture_lambda_handler
def lambda_handler(event: dict[str, Any], _context: Any) -> Any:
    is_http = is_http_event(event or {})
    try:
        bucket, key = _staging_location(parse_invocation(event))
        logger.append_keys(staging_bucket=bucket, staging_key=key)
        return render(is_http, execute(_dependencies(), bucket, key))
    except AnalyticsError as exc:
        logger.warning("Import execute rejected", error=str(exc), code=exc.code)
        return render_exception(is_http, exc)
    except ClientError as exc:
        logger.exception("AWS client error in import-execute")
        return render_error(is_http, 500, "AWS_CLIENT_ERROR", str(exc))
    except Exception as exc:
        logger.exception("Unhandled import-execute error")
        return render_error(is_http, 500, "INTERNAL_ERROR", str(exc) or "Internal server error")
