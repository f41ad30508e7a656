"""
Celery Beat Schedule Configuration

Defines periodic tasks that run on a schedule.
"""

from celery.schedules import crontab

# Schedule configuration
beat_schedule = {
    # Expired Strava detail payloads - hourly
    'sweep-activity-cache': {
        'task': 'tasks.strava.sweep_activity_cache',
        'schedule': crontab(minute=5),
    },
    # Incremental sync for every connected user - nightly at 02:00 UTC
    'sync-all-users': {
        'task': 'tasks.strava.sync_all_users',
        'schedule': crontab(hour=2, minute=0),
    },
    # Failed webhook events - every 30 minutes
    'redrive-webhook-events': {
        'task': 'tasks.strava.redrive_webhook_events',
        'schedule': crontab(minute='*/30'),
    },
}
