"""Django app configuration for the publishing app."""

from django.apps import AppConfig


class PublishingConfig(AppConfig):
    """Configuration for the publishing app."""

    default_auto_field = "django.db.models.BigAutoField"
    name = "publishing"
    verbose_name = "Publishing"
