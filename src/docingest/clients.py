"""Thin wrappers around the AWS document analysis, object storage and queue APIs."""

import json
import logging
import time
from typing import Any, Optional
from uuid import UUID

import boto3

from docingest.config import settings
from docingest.errors import AnalysisResultError
from docingest.models import JobStatus, utcnow

logger = logging.getLogger(__name__)

FEATURE_TYPES = ["TABLES", "FORMS", "QUERIES", "SIGNATURES"]

MEDICAL_QUERIES = [
    "Patient Name",
    "Date of Service",
    "Provider Name",
    "Facility Name",
    "Diagnosis",
    "Medications",
    "Vital Signs",
    "Lab Results",
    "Procedures",
    "Chief Complaint",
    "Treatment Plan",
    "Follow-up Instructions",
]


class TextractClient:
    """Starts analysis jobs and collects their paginated results."""

    def __init__(self, client=None, region: Optional[str] = None):
        self._client = client or boto3.client(
            "textract", region_name=region or settings.aws_region
        )

    def start_analysis(self, bucket: str, key: str, job_tag: Optional[str] = None) -> str:
        """Submit an asynchronous analysis job and return its job id."""
        params: dict[str, Any] = {
            "DocumentLocation": {"S3Object": {"Bucket": bucket, "Name": key}},
            "FeatureTypes": FEATURE_TYPES,
            "QueriesConfig": {"Queries": [{"Text": q} for q in MEDICAL_QUERIES]},
            "NotificationChannel": {
                "SNSTopicArn": settings.textract_sns_topic_arn,
                "RoleArn": settings.textract_role_arn,
            },
        }
        if job_tag:
            params["JobTag"] = job_tag

        response = self._client.start_document_analysis(**params)
        job_id = response["JobId"]
        logger.info(f"Started analysis job {job_id} for s3://{bucket}/{key}")
        return job_id

    def get_all_blocks(self, job_id: str, max_pages: Optional[int] = None) -> list[dict[str, Any]]:
        """Fetch every block of a finished job, following NextToken.

        Raises:
            AnalysisResultError: If the service reports anything but SUCCEEDED.
        """
        max_pages = max_pages or settings.max_result_pages
        blocks: list[dict[str, Any]] = []
        next_token = None
        page_count = 0

        while True:
            page_count += 1
            params: dict[str, Any] = {"JobId": job_id}
            if next_token:
                params["NextToken"] = next_token

            response = self._client.get_document_analysis(**params)
            status = response.get("JobStatus")
            if status != JobStatus.SUCCEEDED:
                raise AnalysisResultError(
                    f"Analysis job {job_id} not successful: "
                    f"{response.get('StatusMessage') or status}"
                )

            page_blocks = response.get("Blocks") or []
            blocks.extend(page_blocks)
            logger.debug(
                f"Result page {page_count} for job {job_id}: "
                f"{len(page_blocks)} blocks (total {len(blocks)})"
            )

            next_token = response.get("NextToken")
            if not next_token:
                break
            if page_count >= max_pages:
                logger.warning(f"Stopped after {max_pages} result pages for job {job_id}")
                break

        logger.info(f"Retrieved {len(blocks)} blocks across {page_count} pages for job {job_id}")
        return blocks


class ObjectStore:
    """Object existence checks and signed download URLs."""

    def __init__(self, client=None, region: Optional[str] = None):
        self._client = client or boto3.client("s3", region_name=region or settings.aws_region)

    def head_object(self, bucket: str, key: str) -> dict[str, Any]:
        """Confirm an object exists. ClientError propagates for 404/403."""
        return self._client.head_object(Bucket=bucket, Key=key)

    def presign_get(self, bucket: str, key: str, expires_in: Optional[int] = None) -> str:
        """Time-limited GET URL for one object."""
        return self._client.generate_presigned_url(
            "get_object",
            Params={"Bucket": bucket, "Key": key},
            ExpiresIn=expires_in or settings.signed_url_expiry_seconds,
        )


class WorkQueue:
    """Hands completed documents to the retrieval agent's work queue."""

    SOURCE = "document_processor"

    def __init__(self, client=None, queue_url: Optional[str] = None, region: Optional[str] = None):
        self._client = client or boto3.client("sqs", region_name=region or settings.aws_region)
        self.queue_url = queue_url or settings.rag_work_queue_url

    @property
    def is_fifo(self) -> bool:
        return self.queue_url.endswith(".fifo")

    def send_document_ready(self, user_id: UUID, document_id: UUID) -> str:
        """Queue one document for embedding and return the message id."""
        params: dict[str, Any] = {
            "QueueUrl": self.queue_url,
            "MessageBody": json.dumps(
                {
                    "user_id": str(user_id),
                    "document_id": str(document_id),
                    "timestamp": utcnow().isoformat(),
                    "source": self.SOURCE,
                }
            ),
        }
        if self.is_fifo:
            params["MessageGroupId"] = str(document_id)
            params["MessageDeduplicationId"] = f"{document_id}-{time.time_ns() // 1_000_000}"

        response = self._client.send_message(**params)
        logger.info(f"Queued document {document_id} for retrieval indexing on {self.queue_url}")
        return response["MessageId"]
