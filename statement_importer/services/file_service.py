"""Storage of uploaded statement files for out-of-process job execution."""

from .s3_file_service import S3FileService


class FileService:
    """Service for statement file operations using S3 as backend."""

    def __init__(self, s3_service: S3FileService) -> None:
        """Initialize FileService with an S3FileService instance."""
        self.s3 = s3_service

    @staticmethod
    def upload_key(user_id: int, job_id: str) -> str:
        """Build the object key an uploaded statement is stored under."""
        return f"uploads/{user_id}/{job_id}.csv"

    def save_upload(self, user_id: int, job_id: str, content: str) -> str:
        """Store statement text and return its key."""
        key = self.upload_key(user_id, job_id)
        self.s3.upload_fileobj(key, content.encode("utf-8"))
        return key

    def read_upload(self, key: str) -> str:
        """Retrieve statement text by key."""
        return self.s3.download_fileobj(key).decode("utf-8-sig")

    def file_exists(self, key: str) -> bool:
        """Check if a stored statement exists."""
        return self.s3.file_exists(key)
