"""Configuration management for the document ingestion pipeline."""

from typing import Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database
    postgres_host: str = "localhost"
    postgres_port: int = 5432
    postgres_user: str = "docingest"
    postgres_password: str = "localdev"
    postgres_db: str = "docingest"
    database_url_override: Optional[str] = None

    # AWS
    aws_region: str = "us-east-2"
    ingestion_bucket: str = "my-receipts-app-bucket"
    textract_sns_topic_arn: str = "arn:aws:sns:us-east-2:000000000000:textract-completion"
    textract_role_arn: str = "arn:aws:iam::000000000000:role/TextractServiceRole"
    rag_work_queue_url: str = "https://sqs.us-east-2.amazonaws.com/000000000000/RagWorkQueue"

    # Ingestion
    fallback_user_id: str = "a6d6193f-d326-4c14-b7fb-9e9cd3e2cd63"
    signed_url_expiry_seconds: int = 300
    max_result_pages: int = 200

    # Logging
    log_level: str = "INFO"

    @property
    def database_url(self) -> str:
        """Construct async database URL."""
        if self.database_url_override:
            return self.database_url_override
        return (
            f"postgresql+asyncpg://{self.postgres_user}:{self.postgres_password}"
            f"@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"
        )

    def public_file_url(self, bucket: str, key: str) -> str:
        """Public object URL stored on the document row."""
        return f"https://{bucket}.s3.{self.aws_region}.amazonaws.com/{key}"

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


settings = Settings()
