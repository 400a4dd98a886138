"""Lambda entry point: classify inbound events and dispatch them."""

import asyncio
import base64
import json
import logging
from typing import Any, Optional
from uuid import uuid4

from docingest.api import SIGNED_URL_PATH, handle_api_request
from docingest.clients import ObjectStore, TextractClient, WorkQueue
from docingest.errors import NotificationParseError, error_response
from docingest.logging_setup import setup_logging
from docingest.models import (
    ApiRequest,
    IngestEvent,
    JobCompletionNotice,
    ObjectCreated,
    Unrecognized,
)
from docingest.pipeline.stage_complete import handle_job_completion
from docingest.pipeline.stage_submit import handle_object_created
from docingest.storage import SessionFactory

logger = logging.getLogger(__name__)

_loop: Optional[asyncio.AbstractEventLoop] = None


def _first_record(raw: dict[str, Any]) -> Optional[dict[str, Any]]:
    records = raw.get("Records")
    if isinstance(records, list) and records and isinstance(records[0], dict):
        return records[0]
    return None


def _from_sqs(record: dict[str, Any]) -> JobCompletionNotice:
    """Completion notices delivered through a queue wrap the SNS envelope in the body."""
    try:
        body = json.loads(record.get("body") or "")
    except ValueError as e:
        raise NotificationParseError("Unexpected message format") from e

    if (
        isinstance(body, dict)
        and body.get("Type") == "Notification"
        and body.get("TopicArn")
        and body.get("Message")
    ):
        return JobCompletionNotice(
            message=body["Message"],
            message_id=body.get("MessageId"),
            topic_arn=body["TopicArn"],
        )
    raise NotificationParseError("Unexpected message format")


def _from_sns(record: dict[str, Any]) -> JobCompletionNotice:
    sns = record.get("Sns") or {}
    message = sns.get("Message")
    if not message:
        raise NotificationParseError("SNS record has no message")
    return JobCompletionNotice(
        message=message,
        message_id=sns.get("MessageId"),
        topic_arn=sns.get("TopicArn"),
    )


def _from_http(raw: dict[str, Any]) -> ApiRequest:
    http = (raw.get("requestContext") or {}).get("http") or {}
    body = raw.get("body")
    if body and raw.get("isBase64Encoded"):
        body = base64.b64decode(body).decode("utf-8")
    return ApiRequest(
        method=raw.get("httpMethod") or http.get("method") or "GET",
        path=raw.get("path") or raw.get("rawPath") or "",
        query={k: str(v) for k, v in (raw.get("queryStringParameters") or {}).items()},
        body=body,
    )


def parse_event(raw: Any) -> IngestEvent:
    """Classify a raw Lambda event.

    Raises:
        NotificationParseError: A queue or topic record that cannot carry a
            completion notice.
    """
    if not isinstance(raw, dict):
        return Unrecognized(reason="Unsupported event type")

    record = _first_record(raw)
    if record is not None:
        source = record.get("eventSource") or record.get("EventSource")

        if source == "aws:s3" and "ObjectCreated" in (record.get("eventName") or ""):
            s3 = record.get("s3") or {}
            return ObjectCreated(
                bucket=(s3.get("bucket") or {}).get("name", ""),
                key=(s3.get("object") or {}).get("key", ""),
                event_name=record.get("eventName"),
            )

        if source == "aws:sqs":
            return _from_sqs(record)

        if source == "aws:sns" or (record.get("Sns") and record.get("EventSubscriptionArn")):
            return _from_sns(record)

    if raw.get("key"):
        user_id = raw.get("userId") or raw.get("userid")
        return ApiRequest(
            method="POST",
            path=SIGNED_URL_PATH,
            body=json.dumps({"key": raw["key"], "userId": user_id}),
        )

    if raw.get("requestContext") or raw.get("httpMethod"):
        return _from_http(raw)

    return Unrecognized(reason="Unsupported event type")


async def route_event(
    raw: Any,
    context: Any = None,
    *,
    session_factory: Optional[SessionFactory] = None,
    textract: Optional[TextractClient] = None,
    object_store: Optional[ObjectStore] = None,
    work_queue: Optional[WorkQueue] = None,
) -> dict[str, Any]:
    """Dispatch one event to exactly one handler. Never raises."""
    request_id = str(uuid4())
    aws_request_id = getattr(context, "aws_request_id", None)
    logger.info(f"[{request_id}] Received event (lambda request {aws_request_id})")

    try:
        event = parse_event(raw)

        if isinstance(event, ObjectCreated):
            return await handle_object_created(
                event, request_id, session_factory, textract, object_store
            )
        if isinstance(event, JobCompletionNotice):
            return await handle_job_completion(
                event, request_id, session_factory, textract, work_queue=work_queue
            )
        if isinstance(event, ApiRequest):
            return await handle_api_request(event, request_id, session_factory, object_store)

        logger.warning(f"[{request_id}] {event.reason}")
        return error_response(400, event.reason, request_id)
    except Exception as e:
        logger.exception(f"[{request_id}] Handler error: {e}")
        return error_response(500, str(e), request_id)


def _event_loop() -> asyncio.AbstractEventLoop:
    # The database pool is bound to this loop and reused by warm invocations
    global _loop
    if _loop is None or _loop.is_closed():
        _loop = asyncio.new_event_loop()
        asyncio.set_event_loop(_loop)
    return _loop


def lambda_handler(event, context):
    """AWS Lambda handler."""
    setup_logging()
    return _event_loop().run_until_complete(route_event(event, context))
