"""AWS-backed service wrappers, the error reporter and the RabbitMQ adapter."""

from __future__ import annotations

import base64
import json
import logging
import uuid

import pytest
from botocore.exceptions import ClientError
from prometheus_client import REGISTRY

from app.domain.models import SessionSnapshot
from app.infrastructure.external.mq_adapter import RabbitMQJobQueue
from app.services.error_reporter import LoggingErrorReporter
from app.services.llm_client import (
    BedrockLlmClient,
    DailyCallBudget,
    LlmAuthenticationError,
    LlmInvocationError,
    LlmQuotaExceededError,
    LlmRateLimitError,
    _decode_bedrock_api_key,
    classify_client_error,
)
from app.services.storage import MissingMediaError, S3MediaStore, StorageError


def _client_error(code: str, operation: str = "Converse") -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": code}}, operation)


@pytest.mark.parametrize(
    "code, expected",
    [
        ("ThrottlingException", LlmRateLimitError),
        ("AccessDeniedException", LlmAuthenticationError),
        ("ServiceQuotaExceededException", LlmQuotaExceededError),
        ("ValidationException", LlmInvocationError),
    ],
)
def test_client_errors_map_to_llm_errors(code, expected):
    assert type(classify_client_error(_client_error(code))) is expected


def test_daily_budget_blocks_after_limit():
    budget = DailyCallBudget(limit=2)
    budget.consume()
    budget.consume()

    assert budget.exhausted()
    with pytest.raises(LlmQuotaExceededError):
        budget.consume()


def test_zero_budget_means_unlimited():
    budget = DailyCallBudget(limit=0)
    for _ in range(10):
        budget.consume()
    assert not budget.exhausted()


def test_api_key_decoding():
    encoded = base64.b64encode(b"AKIA123:secret/key").decode()

    assert _decode_bedrock_api_key(encoded) == ("AKIA123", "secret/key")
    assert _decode_bedrock_api_key("no-separator") is None
    assert _decode_bedrock_api_key(None) is None


class FakeConverse:
    def __init__(self, *texts):
        self.texts = texts
        self.requests = []

    def converse(self, **request):
        self.requests.append(request)
        return {"output": {"message": {"content": [{"text": text} for text in self.texts]}}}


@pytest.mark.anyio
async def test_llm_invoke_joins_text_blocks(monkeypatch):
    llm = BedrockLlmClient()
    fake = FakeConverse('{"summary":', '"ok"}')
    monkeypatch.setattr(llm, "_client", fake)

    reply = await llm.invoke(system_prompt="system", user_prompt="user", max_tokens=50)

    assert reply == '{"summary":\n"ok"}'
    [request] = fake.requests
    assert request["inferenceConfig"]["maxTokens"] == 50
    assert request["messages"][0]["content"][0]["text"] == "user"


@pytest.mark.anyio
async def test_llm_without_client_returns_none():
    llm = BedrockLlmClient()

    assert not llm.is_configured
    assert await llm.invoke(system_prompt="s", user_prompt="u") is None


@pytest.mark.anyio
async def test_llm_budget_is_enforced(monkeypatch):
    llm = BedrockLlmClient()
    monkeypatch.setattr(llm, "_client", FakeConverse("hi"))
    monkeypatch.setattr(llm, "_budget", DailyCallBudget(limit=1))

    assert await llm.invoke(system_prompt="s", user_prompt="u") == "hi"
    assert llm.quota_exhausted
    with pytest.raises(LlmQuotaExceededError):
        await llm.invoke(system_prompt="s", user_prompt="u")


class FakeS3:
    def __init__(self, fail=False):
        self.fail = fail
        self.deleted = []

    def head_object(self, Bucket, Key):
        if self.fail:
            raise _client_error("404", "HeadObject")
        return {"ContentType": "audio/webm"}

    def get_object(self, Bucket, Key):
        return {"Body": f"{Bucket}/{Key}"}

    def delete_objects(self, Bucket, Delete):
        if self.fail:
            raise _client_error("AccessDenied", "DeleteObjects")
        self.deleted.extend(item["Key"] for item in Delete["Objects"])


def _snapshot(*keys):
    return SessionSnapshot(id=uuid.uuid4(), media_keys=list(keys))


@pytest.mark.anyio
async def test_media_store_returns_first_recording():
    store = S3MediaStore(bucket="recordings", client=FakeS3())

    blob = await store.fetch_first_attached_blob(_snapshot("users/1/take-2.webm", "users/1/take-1.webm"))

    assert blob.key == "users/1/take-2.webm"
    assert blob.filename == "take-2.webm"
    assert blob.content_type == "audio/webm"
    assert blob.open() == "recordings/users/1/take-2.webm"


@pytest.mark.anyio
async def test_media_store_errors():
    with pytest.raises(MissingMediaError):
        await S3MediaStore(bucket="b", client=FakeS3()).fetch_first_attached_blob(_snapshot())
    with pytest.raises(StorageError):
        await S3MediaStore(bucket="b", client=FakeS3(fail=True)).fetch_first_attached_blob(_snapshot("a"))
    with pytest.raises(StorageError):
        await S3MediaStore(bucket="b", client=FakeS3(fail=True)).delete_blobs(["a"])


@pytest.mark.anyio
async def test_media_store_deletes_keys():
    s3 = FakeS3()
    await S3MediaStore(bucket="b", client=s3).delete_blobs(["a", "b"])
    await S3MediaStore(bucket="b", client=s3).delete_blobs([])
    assert s3.deleted == ["a", "b"]


def test_reporter_logs_context_and_counts(caplog):
    labels = {"error_class": "ValueError", "stage": "metrics"}
    before = REGISTRY.get_sample_value("analysis_reported_errors_total", labels) or 0.0

    with caplog.at_level(logging.ERROR, logger="app.services.error_reporter"):
        LoggingErrorReporter().report(ValueError("bad"), {"pipeline_stage": "metrics", "session": "session:1"})

    assert REGISTRY.get_sample_value("analysis_reported_errors_total", labels) == before + 1
    assert "session=session:1" in caplog.text


class FakeMethod:
    def __init__(self, tag):
        self.delivery_tag = tag


class FakeChannel:
    def __init__(self, bodies):
        self.bodies = bodies
        self.acked = []
        self.nacked = []
        self.callback = None

    def queue_declare(self, queue, durable):
        self.declared = (queue, durable)

    def basic_qos(self, prefetch_count):
        self.prefetch = prefetch_count

    def basic_consume(self, queue, on_message_callback):
        self.callback = on_message_callback

    def start_consuming(self):
        for tag, body in enumerate(self.bodies):
            self.callback(self, FakeMethod(tag), None, body)

    def basic_ack(self, delivery_tag):
        self.acked.append(delivery_tag)

    def basic_nack(self, delivery_tag, requeue):
        self.nacked.append((delivery_tag, requeue))


class FakeConnection:
    def __init__(self, channel):
        self._channel = channel
        self.closed = False

    def channel(self):
        return self._channel

    def close(self):
        self.closed = True


def test_consumer_acks_handled_jobs_and_drops_the_rest(monkeypatch):
    channel = FakeChannel([json.dumps({"ok": True}).encode(), json.dumps({"ok": False}).encode(), b"{not json"])
    connection = FakeConnection(channel)
    queue = RabbitMQJobQueue()
    monkeypatch.setattr(queue, "_get_connection", lambda: connection)
    seen = []

    def handler(message):
        seen.append(message)
        return message["ok"]

    queue.consume(handler)

    assert seen == [{"ok": True}, {"ok": False}]
    assert channel.acked == [0]
    assert channel.nacked == [(1, False), (2, False)]
    assert channel.prefetch == 1
    assert connection.closed
