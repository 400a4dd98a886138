"""HTTP-shaped requests: the signed download URL endpoint."""

import json
import logging
from typing import Any, Optional
from uuid import UUID

from docingest.clients import ObjectStore
from docingest.config import settings
from docingest.errors import ValidationFailure, error_response, json_response
from docingest.models import ApiRequest
from docingest.storage import DocumentRepository, SessionFactory, get_session

logger = logging.getLogger(__name__)

SIGNED_URL_PATH = "/get-s3-url"


def _request_params(request: ApiRequest) -> dict[str, Any]:
    """key/userId from a POST JSON body, else from the query string."""
    if request.method.upper() == "POST" and request.body:
        try:
            body = json.loads(request.body)
        except ValueError as e:
            raise ValidationFailure("Request body is not valid JSON") from e
        if not isinstance(body, dict):
            raise ValidationFailure("Request body must be a JSON object")
        return body
    return dict(request.query)


def parse_signed_url_request(request: ApiRequest) -> tuple[str, UUID]:
    """Validated (key, user id) for a signed URL request.

    Raises:
        ValidationFailure: Missing key or user id, or a user id that is not a UUID.
    """
    params = _request_params(request)
    key = params.get("key")
    user_id = params.get("userId") or params.get("userid")
    if not key or not user_id:
        raise ValidationFailure("Missing key or userId")
    try:
        return str(key), UUID(str(user_id))
    except ValueError as e:
        raise ValidationFailure("Invalid userId") from e


async def handle_signed_url(
    request: ApiRequest,
    request_id: str,
    session_factory: Optional[SessionFactory] = None,
    object_store: Optional[ObjectStore] = None,
) -> dict[str, Any]:
    """Short-lived download URL for a file the caller owns."""
    try:
        key, user_id = parse_signed_url_request(request)
    except ValidationFailure as e:
        return error_response(e.status_code, str(e), request_id)

    async with get_session(session_factory) as session:
        doc = await DocumentRepository(session).get_owned_by_key(user_id, key)
    if doc is None:
        logger.warning(f"[{request_id}] No document {key} for user {user_id}")
        return error_response(403, "Unauthorized or file not found", request_id)

    try:
        object_store = object_store or ObjectStore()
        url = object_store.presign_get(settings.ingestion_bucket, key)
    except Exception as e:
        logger.error(f"[{request_id}] Signing {key} failed: {e}")
        return error_response(500, "Failed to generate signed URL", request_id)

    return json_response(
        200, {"url": url}, request_id, headers={"Content-Type": "application/json"}
    )


async def handle_api_request(
    request: ApiRequest,
    request_id: str,
    session_factory: Optional[SessionFactory] = None,
    object_store: Optional[ObjectStore] = None,
) -> dict[str, Any]:
    """Route an HTTP-shaped request by path."""
    if request.path.endswith(SIGNED_URL_PATH):
        return await handle_signed_url(request, request_id, session_factory, object_store)
    logger.info(f"[{request_id}] No route for {request.method} {request.path}")
    return error_response(404, "Not Found", request_id)
