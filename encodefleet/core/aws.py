"""AWS S3 storage capability: fetch inputs and store outputs."""

import logging
import re
from io import BytesIO
from typing import Optional, Tuple

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from encodefleet.core.config import Settings, get_settings
from encodefleet.core.errors import ConfigurationError, TransientInfraError

logger = logging.getLogger(__name__)

_MISSING_CODES = {"NoSuchKey", "404", "NotFound", "NoSuchBucket"}


class S3Storage:
    """Reads and writes objects by reference (``s3://bucket/key`` or a bare key)."""

    def __init__(self, client, default_bucket: str = ""):
        self._client = client
        self._default_bucket = (default_bucket or "").strip()

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "S3Storage":
        settings = settings or get_settings()
        client = boto3.client(
            "s3",
            aws_access_key_id=settings.AWS_ACCESS_KEY_ID or None,
            aws_secret_access_key=settings.AWS_SECRET_ACCESS_KEY or None,
            region_name=settings.AWS_REGION,
            config=Config(
                s3={"addressing_style": "path"},
                connect_timeout=settings.PROVIDER_TIMEOUT_SECONDS,
                read_timeout=settings.PROVIDER_TIMEOUT_SECONDS,
            ),
        )
        return cls(client, settings.AWS_S3_BUCKET)

    @property
    def client(self):
        return self._client

    def parse_ref(self, ref: str) -> Tuple[str, str]:
        """Split a reference into (bucket, key)."""
        ref = (ref or "").strip()
        if ref.startswith("s3://"):
            bucket, _, key = ref[len("s3://"):].partition("/")
        else:
            bucket, key = self._default_bucket, ref.lstrip("/")
        if not bucket:
            raise ConfigurationError("AWS_S3_BUCKET is not configured.")
        # https://docs.aws.amazon.com/AmazonS3/latest/userguide/bucketnamingrules.html
        if not re.fullmatch(r"[a-z0-9][a-z0-9.-]{1,61}[a-z0-9]", bucket):
            raise ConfigurationError(f"Invalid bucket name '{bucket}'.")
        if not key:
            raise ConfigurationError(f"Storage reference '{ref}' has no key.")
        return bucket, key

    def fetch(self, ref: str) -> bytes:
        """Download an object into memory."""
        bucket, key = self.parse_ref(ref)
        stream = BytesIO()
        try:
            self.client.download_fileobj(bucket, key, stream)
        except ClientError as e:
            code = str(e.response.get("Error", {}).get("Code", ""))
            if code in _MISSING_CODES:
                raise ConfigurationError(f"Input {ref} does not exist.") from e
            logger.error(f"Error downloading {ref} from S3: {e}")
            raise TransientInfraError(f"S3 download of {ref} failed: {code}", operation="fetch") from e
        except BotoCoreError as e:
            raise TransientInfraError(f"S3 download of {ref} failed: {e}", operation="fetch") from e
        return stream.getvalue()

    def store(self, data: bytes, ref: str, content_type: str = "application/octet-stream") -> str:
        """Upload bytes and return the canonical ``s3://`` reference."""
        bucket, key = self.parse_ref(ref)
        try:
            self.client.put_object(Bucket=bucket, Key=key, Body=data, ContentType=content_type)
        except (ClientError, BotoCoreError) as e:
            logger.error(f"Error uploading {ref} to S3: {e}")
            raise TransientInfraError(f"S3 upload of {ref} failed: {e}", operation="store") from e
        return f"s3://{bucket}/{key}"
