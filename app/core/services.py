"""
Base service layer patterns for business logic encapsulation.

Services encapsulate business logic separate from views and models.
Views handle HTTP concerns, models handle data, services handle logic.
Expected failures are raised as core.exceptions subclasses so that
views and Celery tasks can map them consistently.

Usage:
    from core.services import BaseService

    class MergeAssembler(BaseService):
        @classmethod
        def merge_session(cls, session_id):
            with cls.atomic():
                ...
            cls.get_logger().info("Merged session", extra={"session_id": str(session_id)})
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import TYPE_CHECKING

from django.db import transaction

if TYPE_CHECKING:
    from collections.abc import Generator


class BaseService:
    """
    Base class for service layer classes.

    Provides common utilities for services:
    - Logging setup per service
    - Database transaction management
    """

    @classmethod
    def get_logger(cls) -> logging.Logger:
        """
        Get logger for this service.

        Returns a logger named after the service class for
        easy filtering in logs.
        """
        return logging.getLogger(f"{cls.__module__}.{cls.__name__}")

    @classmethod
    @contextmanager
    def atomic(cls) -> Generator[None, None, None]:
        """
        Execute operations in a database transaction.

        This is a thin wrapper around Django's transaction.atomic().
        Use it to make transaction boundaries explicit in service code.
        """
        with transaction.atomic():
            yield
