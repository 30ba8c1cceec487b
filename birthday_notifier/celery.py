from celery import Celery

# Create Celery app
celery = Celery("birthday_notifier")

# Load configuration from birthday_notifier.config.celeryconfig module
celery.config_from_object("birthday_notifier.config.celeryconfig")
