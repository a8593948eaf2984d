"""asyncpg-backed repositories."""
from delivery_service.repositories.deliveries import DeliveryLogRepository, DeliveryLogStore
from delivery_service.repositories.feedback import FeedbackRepository, FeedbackStore
from delivery_service.repositories.projects import ProjectRepository, ProjectStore
from delivery_service.repositories.rate_limits import PostgresRateLimitStore

__all__ = [
    "DeliveryLogRepository",
    "DeliveryLogStore",
    "FeedbackRepository",
    "FeedbackStore",
    "PostgresRateLimitStore",
    "ProjectRepository",
    "ProjectStore",
]
