"""
Add Celery Beat schedules for publishing maintenance tasks.

This migration creates periodic task schedules for:
- Reconciling publish jobs left non-terminal after polling gave up
- Reclaiming upload sessions that stopped receiving chunks
"""

from django.db import migrations


def create_periodic_tasks(apps, schema_editor):
    """Create periodic tasks for publishing maintenance."""
    IntervalSchedule = apps.get_model("django_celery_beat", "IntervalSchedule")
    PeriodicTask = apps.get_model("django_celery_beat", "PeriodicTask")

    schedule_5min, _ = IntervalSchedule.objects.get_or_create(
        every=5,
        period="minutes",
    )
    schedule_1hour, _ = IntervalSchedule.objects.get_or_create(
        every=1,
        period="hours",
    )

    PeriodicTask.objects.get_or_create(
        name="Publishing: Reconcile Stale Publish Jobs",
        defaults={
            "task": "publishing.tasks.reconcile_stale_publish_jobs",
            "interval": schedule_5min,
            "enabled": True,
            "description": (
                "Resumes status polling for jobs still SUBMITTED or PROCESSING "
                "after their poller ran out of attempts, and fails jobs that "
                "never resolve."
            ),
        },
    )

    PeriodicTask.objects.get_or_create(
        name="Publishing: Cleanup Expired Upload Sessions",
        defaults={
            "task": "publishing.tasks.cleanup_expired_upload_sessions",
            "interval": schedule_1hour,
            "enabled": True,
            "description": (
                "Marks inactive chunked upload sessions as expired and deletes "
                "their staged chunks."
            ),
        },
    )


def remove_periodic_tasks(apps, schema_editor):
    """Remove publishing periodic tasks on migration rollback."""
    PeriodicTask = apps.get_model("django_celery_beat", "PeriodicTask")

    PeriodicTask.objects.filter(
        name__in=[
            "Publishing: Reconcile Stale Publish Jobs",
            "Publishing: Cleanup Expired Upload Sessions",
        ]
    ).delete()


class Migration(migrations.Migration):
    dependencies = [
        ("publishing", "0001_initial"),
        ("django_celery_beat", "0019_alter_periodictasks_options"),
    ]

    operations = [
        migrations.RunPython(create_periodic_tasks, remove_periodic_tasks),
    ]
