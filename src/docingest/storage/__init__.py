"""Storage layer for the ingestion pipeline.

Provides database access via SQLAlchemy with PostgreSQL + pgvector.
"""

from .database import (
    Base,
    SessionFactory,
    close_db,
    create_engine,
    create_session_factory,
    get_engine,
    get_session,
    get_session_factory,
    init_db,
)
from .orm_models import (
    AnalysisJobORM,
    ChunkORM,
    DocumentORM,
    EntityORM,
    TableORM,
)
from .repositories import (
    AnalysisJobRepository,
    ChunkRepository,
    DocumentRepository,
    EntityRepository,
    TableRepository,
)

__all__ = [
    # Database
    "Base",
    "SessionFactory",
    "create_engine",
    "create_session_factory",
    "get_engine",
    "get_session_factory",
    "get_session",
    "init_db",
    "close_db",
    # ORM Models
    "DocumentORM",
    "AnalysisJobORM",
    "ChunkORM",
    "EntityORM",
    "TableORM",
    # Repositories
    "DocumentRepository",
    "AnalysisJobRepository",
    "ChunkRepository",
    "EntityRepository",
    "TableRepository",
]
