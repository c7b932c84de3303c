"""S3FileService provides S3-backed storage for uploaded statements."""

import boto3
from botocore.exceptions import ClientError

from statement_importer.core.settings import Settings, get_settings


class S3FileService:
    """Service for S3 file operations: upload, download, existence checks, ensure bucket."""

    def __init__(self, settings: Settings | None = None, client: object | None = None) -> None:
        """Initialize S3FileService and ensure the bucket exists."""
        settings = settings or get_settings()
        self.s3 = client or boto3.client(
            "s3",
            endpoint_url=settings.s3_endpoint_url,
            aws_access_key_id=settings.s3_access_key,
            aws_secret_access_key=settings.s3_secret_key,
        )
        self.bucket = settings.s3_bucket
        self.ensure_bucket()

    def ensure_bucket(self) -> None:
        """Ensure the S3 bucket exists, create if not present."""
        try:
            self.s3.head_bucket(Bucket=self.bucket)
        except ClientError:
            self.s3.create_bucket(Bucket=self.bucket)

    def upload_fileobj(self, key: str, data: bytes) -> None:
        """Upload a file object to S3 under the given key."""
        self.s3.put_object(Bucket=self.bucket, Key=str(key), Body=data)

    def download_fileobj(self, key: str) -> bytes:
        """Download a file object from S3 by key."""
        obj = self.s3.get_object(Bucket=self.bucket, Key=str(key))
        return obj["Body"].read()

    def file_exists(self, key: str) -> bool:
        """Check if a file exists in S3 by key."""
        try:
            self.s3.head_object(Bucket=self.bucket, Key=str(key))
        except ClientError:
            return False
        else:
            return True
