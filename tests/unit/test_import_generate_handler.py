"""
tests/unit/test_import_generate_handler.py — First stage of the chat-log import.

Validates:
- only records strictly past the cursor with a userMessage are staged
- the cursor advances to the greatest staged id and never moves backwards
- an empty window is a no-op: nothing staged, nothing queued, cursor untouched
- an embedding failure stages nothing and leaves the cursor where it was
- a missing cursor parameter is a named, non-retryable error
- DynamoDB result pages are followed to the end
"""

from __future__ import annotations

import io
import json
import sys
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import boto3
import pytest
from botocore.exceptions import ClientError
from moto import mock_aws

sys.path.insert(0, str(Path(__file__).resolve().parents[2]))
sys.path.insert(0, str(Path(__file__).resolve().parents[2] / "src" / "analytics-lib" / "src"))

from analytics_core import ParameterStore
from analytics_core.embeddings import TitanEmbedder
from analytics_core.models import EMBEDDING_DIMENSIONS
from src.import_generate import handler as import_generate_handler

REGION = "eu-west-2"
TABLE = "cv-chat-logs"
BUCKET = "nakomis-analytics-staging"
CURSOR_PARAM = "/nakom.is/analytics/CVCHAT/last-imported-timestamp"
EXECUTE_FUNCTION = "nakom-admin-import-execute"
NOW = datetime(2026, 3, 1, 12, 0, 0, tzinfo=UTC)


def fake_vector(text: str) -> list[float]:
    """Deterministic stand-in for a Titan vector, one value per dimension."""
    seed = (sum(map(ord, text)) % 97) / 100.0
    return [seed] * EMBEDDING_DIMENSIONS


class FakeBedrock:
    """bedrock-runtime InvokeModel returning deterministic Titan-shaped bodies."""

    def __init__(self) -> None:
        self.calls: list[dict[str, Any]] = []
        self.fail_on: set[str] = set()

    def invoke_model(self, **kwargs: Any) -> dict[str, Any]:
        body = json.loads(kwargs["body"])
        self.calls.append({"modelId": kwargs["modelId"], **body})
        if body["inputText"] in self.fail_on:
            raise ClientError(
                {"Error": {"Code": "ThrottlingException", "Message": "Too many requests"}},
                "InvokeModel",
            )
        payload = {"embedding": fake_vector(body["inputText"]), "inputTextTokenCount": 3}
        return {"body": io.BytesIO(json.dumps(payload).encode("utf-8"))}


class FakeLambda:
    def __init__(self) -> None:
        self.invocations: list[dict[str, Any]] = []

    def invoke(self, **kwargs: Any) -> dict[str, Any]:
        self.invocations.append(
            {
                "FunctionName": kwargs["FunctionName"],
                "InvocationType": kwargs["InvocationType"],
                "Payload": json.loads(kwargs["Payload"]),
            }
        )
        return {"StatusCode": 202}


class FakeLambdaContext:
    function_name = "nakom-admin-import-generate"
    memory_limit_in_mb = 512
    invoked_function_arn = "arn:aws:lambda:eu-west-2:111111111111:function:nakom-admin-import-generate"
    aws_request_id = "req-456"


def chat_item(sk: str, message: str | None = "hello", **extra: Any) -> dict[str, Any]:
    item: dict[str, Any] = {
        "logType": "CVCHAT",
        "sk": sk,
        "conversationId": "conv-1",
        "ip": "203.0.113.7",
        "userAgent": "Mozilla/5.0",
        "country": "GB",
        "messageCount": 2,
        "inputTokens": 120,
        "outputTokens": 340,
        "durationMs": 1800,
        "rateLimited": False,
    }
    if message is not None:
        item["userMessage"] = message
    item.update(extra)
    return item


@pytest.fixture
def aws_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("AWS_REGION", REGION)
    monkeypatch.setenv("AWS_DEFAULT_REGION", REGION)
    monkeypatch.setenv("AWS_ACCESS_KEY_ID", "testing")
    monkeypatch.setenv("AWS_SECRET_ACCESS_KEY", "testing")
    monkeypatch.setenv("AWS_SESSION_TOKEN", "testing")
    monkeypatch.setenv("STAGING_BUCKET", BUCKET)
    monkeypatch.setenv("IMPORT_EXECUTE_FUNCTION_NAME", EXECUTE_FUNCTION)
    for name in ("CHAT_LOGS_TABLE", "LOG_TYPE", "IMPORT_CURSOR_PARAM", "EMBED_MODEL_ID"):
        monkeypatch.delenv(name, raising=False)


def create_chat_table(dynamodb: Any) -> Any:
    return dynamodb.create_table(
        TableName=TABLE,
        KeySchema=[
            {"AttributeName": "logType", "KeyType": "HASH"},
            {"AttributeName": "sk", "KeyType": "RANGE"},
        ],
        AttributeDefinitions=[
            {"AttributeName": "logType", "AttributeType": "S"},
            {"AttributeName": "sk", "AttributeType": "S"},
        ],
        BillingMode="PAY_PER_REQUEST",
    )


@pytest.fixture
def pipeline(aws_env: None, monkeypatch: pytest.MonkeyPatch) -> Any:
    with mock_aws():
        dynamodb = boto3.resource("dynamodb", region_name=REGION)
        table = create_chat_table(dynamodb)
        s3 = boto3.client("s3", region_name=REGION)
        s3.create_bucket(Bucket=BUCKET, CreateBucketConfiguration={"LocationConstraint": REGION})
        ssm = boto3.client("ssm", region_name=REGION)
        bedrock = FakeBedrock()
        lambda_client = FakeLambda()
        deps = import_generate_handler.ImportGenerateDependencies(
            dynamodb=dynamodb,
            s3=s3,
            lambda_client=lambda_client,
            params=ParameterStore(ssm_client=ssm),
            embedder=TitanEmbedder(bedrock_client=bedrock, concurrency=2),
        )
        monkeypatch.setattr(import_generate_handler, "_dependencies", lambda: deps)
        monkeypatch.setattr(import_generate_handler, "_now_utc", lambda: NOW)
        yield {
            "deps": deps,
            "table": table,
            "s3": s3,
            "ssm": ssm,
            "bedrock": bedrock,
            "lambda": lambda_client,
        }


def _invoke(event: dict[str, Any] | None = None) -> Any:
    return import_generate_handler.lambda_handler(event or {}, FakeLambdaContext())


def _cursor(ssm: Any) -> str:
    return ssm.get_parameter(Name=CURSOR_PARAM)["Parameter"]["Value"]


def _staged(s3: Any, key: str) -> list[dict[str, Any]]:
    return json.loads(s3.get_object(Bucket=BUCKET, Key=key)["Body"].read())


def _staged_keys(s3: Any) -> list[str]:
    return [obj["Key"] for obj in s3.list_objects_v2(Bucket=BUCKET).get("Contents", [])]


# ---------------------------------------------------------------------------
# Happy path
# ---------------------------------------------------------------------------


def test_generate_stages_records_past_cursor_and_queues_execute(pipeline: dict[str, Any]) -> None:
    table = pipeline["table"]
    ssm = pipeline["ssm"]
    ssm.put_parameter(Name=CURSOR_PARAM, Value="2026-02-26T10:00:00.000Z#zzz", Type="String")
    table.put_item(Item=chat_item("2026-02-26T09:59:00.000Z#old", "already imported"))
    table.put_item(Item=chat_item("2026-02-26T10:00:00.000Z#zzz", "the cursor itself"))
    table.put_item(Item=chat_item("2026-02-26T10:15:00.000Z#a1", "what does Martin do?"))
    table.put_item(Item=chat_item("2026-02-26T10:16:00.000Z#b2", "tell me more"))
    table.put_item(Item=chat_item("2026-02-26T10:17:00.000Z#SMS_SENT", None))
    table.put_item(Item={**chat_item("2026-02-26T10:18:00.000Z#other", "x"), "logType": "OTHER"})

    result = _invoke()

    expected_key = f"import-staging/{int(NOW.timestamp() * 1000)}.json"
    assert result == {"queued": 2, "stagingKey": expected_key}
    staged = _staged(pipeline["s3"], expected_key)
    assert [r["id"] for r in staged] == [
        "2026-02-26T10:15:00.000Z#a1",
        "2026-02-26T10:16:00.000Z#b2",
    ]
    assert staged[0]["userMessage"] == "what does Martin do?"
    assert staged[0]["messageCount"] == 2
    assert len(staged[0]["embedding"]) == EMBEDDING_DIMENSIONS
    assert _cursor(ssm) == "2026-02-26T10:16:00.000Z#b2"
    assert pipeline["lambda"].invocations == [
        {
            "FunctionName": EXECUTE_FUNCTION,
            "InvocationType": "Event",
            "Payload": {"stagingBucket": BUCKET, "stagingKey": expected_key},
        }
    ]


def test_generate_embeds_only_user_messages_with_titan_v2(pipeline: dict[str, Any]) -> None:
    pipeline["ssm"].put_parameter(Name=CURSOR_PARAM, Value="2026-01-01T00:00:00.000Z#0", Type="String")
    long_message = "a" * 9000
    pipeline["table"].put_item(Item=chat_item("2026-02-26T10:15:00.000Z#a1", long_message))

    _invoke()

    (call,) = pipeline["bedrock"].calls
    assert call["modelId"] == "amazon.titan-embed-text-v2:0"
    assert call["dimensions"] == EMBEDDING_DIMENSIONS
    assert len(call["inputText"]) == 8000


def test_generate_normalises_string_set_tools(pipeline: dict[str, Any]) -> None:
    pipeline["ssm"].put_parameter(Name=CURSOR_PARAM, Value="2026-01-01T00:00:00.000Z#0", Type="String")
    pipeline["table"].put_item(
        Item=chat_item("2026-02-26T10:15:00.000Z#a1", "hi", toolsCalled={"search_cv", "get_projects"})
    )

    result = _invoke()

    staged = _staged(pipeline["s3"], result["stagingKey"])
    assert staged[0]["toolsCalled"] == ["get_projects", "search_cv"]


def test_generate_twice_only_imports_new_records(pipeline: dict[str, Any]) -> None:
    table = pipeline["table"]
    ssm = pipeline["ssm"]
    ssm.put_parameter(Name=CURSOR_PARAM, Value="2026-01-01T00:00:00.000Z#0", Type="String")
    table.put_item(Item=chat_item("2026-02-26T10:15:00.000Z#a1", "first"))

    first = _invoke()
    assert first["queued"] == 1
    assert _invoke() == {"imported": 0}

    table.put_item(Item=chat_item("2026-02-27T08:00:00.000Z#c3", "second"))
    third = _invoke()

    assert third["queued"] == 1
    assert [r["id"] for r in _staged(pipeline["s3"], third["stagingKey"])] == [
        "2026-02-27T08:00:00.000Z#c3"
    ]
    assert _cursor(ssm) == "2026-02-27T08:00:00.000Z#c3"
    assert len(pipeline["lambda"].invocations) == 2


# ---------------------------------------------------------------------------
# No-op and failure paths
# ---------------------------------------------------------------------------


def test_generate_with_nothing_new_is_a_no_op(pipeline: dict[str, Any]) -> None:
    ssm = pipeline["ssm"]
    ssm.put_parameter(Name=CURSOR_PARAM, Value="2026-02-26T10:00:00.000Z#zzz", Type="String")
    pipeline["table"].put_item(Item=chat_item("2026-02-26T09:00:00.000Z#old", "old"))
    pipeline["table"].put_item(Item=chat_item("2026-02-26T11:00:00.000Z#SMS_SENT", None))

    assert _invoke() == {"imported": 0}
    assert _cursor(ssm) == "2026-02-26T10:00:00.000Z#zzz"
    assert _staged_keys(pipeline["s3"]) == []
    assert pipeline["lambda"].invocations == []
    assert pipeline["bedrock"].calls == []


def test_generate_embedding_failure_leaves_cursor_and_stages_nothing(
    pipeline: dict[str, Any],
) -> None:
    ssm = pipeline["ssm"]
    ssm.put_parameter(Name=CURSOR_PARAM, Value="2026-01-01T00:00:00.000Z#0", Type="String")
    pipeline["table"].put_item(Item=chat_item("2026-02-26T10:15:00.000Z#a1", "fine"))
    pipeline["table"].put_item(Item=chat_item("2026-02-26T10:16:00.000Z#b2", "throttled"))
    pipeline["bedrock"].fail_on.add("throttled")

    result = _invoke()

    assert result["code"] == "AWS_CLIENT_ERROR"
    assert _cursor(ssm) == "2026-01-01T00:00:00.000Z#0"
    assert _staged_keys(pipeline["s3"]) == []
    assert pipeline["lambda"].invocations == []


def test_generate_without_cursor_is_named_error(pipeline: dict[str, Any]) -> None:
    pipeline["table"].put_item(Item=chat_item("2026-02-26T10:15:00.000Z#a1", "hi"))

    result = _invoke()

    assert result["code"] == "IMPORT_CURSOR_MISSING"
    assert CURSOR_PARAM in result["error"]
    assert pipeline["bedrock"].calls == []


def test_generate_without_staging_bucket_is_internal_error(
    pipeline: dict[str, Any], monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.delenv("STAGING_BUCKET")
    pipeline["ssm"].put_parameter(Name=CURSOR_PARAM, Value="2026-01-01T00:00:00.000Z#0", Type="String")

    result = _invoke()

    assert result == {"error": "STAGING_BUCKET environment variable not set", "code": "INTERNAL_ERROR"}


def test_generate_over_http_wraps_response(pipeline: dict[str, Any]) -> None:
    event = {
        "version": "2.0",
        "rawPath": "/import/generate",
        "requestContext": {"http": {"method": "POST", "path": "/import/generate"}},
    }

    response = _invoke(event)

    assert response["statusCode"] == 412
    assert json.loads(response["body"])["code"] == "IMPORT_CURSOR_MISSING"


# ---------------------------------------------------------------------------
# Source pagination
# ---------------------------------------------------------------------------


class PagedTable:
    def __init__(self, pages: list[list[dict[str, Any]]]) -> None:
        self.pages = pages
        self.calls: list[dict[str, Any]] = []

    def query(self, **kwargs: Any) -> dict[str, Any]:
        self.calls.append(kwargs)
        index = len(self.calls) - 1
        response: dict[str, Any] = {"Items": self.pages[index]}
        if index + 1 < len(self.pages):
            response["LastEvaluatedKey"] = {"logType": "CVCHAT", "sk": f"page-{index}"}
        return response


class PagedResource:
    def __init__(self, table: PagedTable) -> None:
        self.table = table
        self.names: list[str] = []

    def Table(self, name: str) -> PagedTable:  # noqa: N802 - boto3 resource API
        self.names.append(name)
        return self.table


def test_fetch_new_items_follows_every_page() -> None:
    table = PagedTable(
        [
            [chat_item("2026-02-26T10:15:00.000Z#a1")],
            [],
            [chat_item("2026-02-26T10:16:00.000Z#b2"), chat_item("2026-02-26T10:17:00.000Z#c3")],
        ]
    )
    resource = PagedResource(table)
    deps = import_generate_handler.ImportGenerateDependencies(
        dynamodb=resource,
        s3=None,
        lambda_client=None,
        params=None,  # type: ignore[arg-type]
        embedder=None,  # type: ignore[arg-type]
    )

    items = import_generate_handler.fetch_new_items(deps, "2026-01-01T00:00:00.000Z#0")

    assert [i["sk"] for i in items] == [
        "2026-02-26T10:15:00.000Z#a1",
        "2026-02-26T10:16:00.000Z#b2",
        "2026-02-26T10:17:00.000Z#c3",
    ]
    assert resource.names == [TABLE]
    assert "ExclusiveStartKey" not in table.calls[0]
    assert table.calls[1]["ExclusiveStartKey"] == {"logType": "CVCHAT", "sk": "page-0"}
    assert table.calls[2]["ExclusiveStartKey"] == {"logType": "CVCHAT", "sk": "page-1"}
