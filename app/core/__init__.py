"""
Core Application - Infrastructure & Base Classes

Generic, reusable infrastructure shared by domain apps. No publishing
logic lives here.

Models (import from core.models):
    - BaseModel: Abstract model with timestamps (created_at, updated_at)

Model Mixins (import from core.model_mixins):
    - UUIDPrimaryKeyMixin: UUID as primary key

Services (import from core.services):
    - BaseService: Base class for service layer

Exceptions (import from core.exceptions):
    - BaseApplicationError, ValidationError, NotFoundError,
      ConflictError, ExternalServiceError

Concurrency (import from core.locks):
    - DistributedLock: Redis SET NX lock with owner token
    - LockAcquisitionError

Resilience (import from core.circuit_breaker):
    - CircuitBreaker, CircuitOpenError

Note:
    Django models and model mixins are NOT imported here to avoid
    AppRegistryNotReady errors. Import them directly from their modules.
"""

# Services (no Django model dependencies)
from .services import BaseService

# Exceptions (no Django dependencies)
from .exceptions import (
    BaseApplicationError,
    ConflictError,
    ExternalServiceError,
    NotFoundError,
    ValidationError,
)

__all__ = [
    "BaseService",
    "BaseApplicationError",
    "ConflictError",
    "ExternalServiceError",
    "NotFoundError",
    "ValidationError",
]
