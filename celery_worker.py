"""
Experience Hub Celery Worker Entry Point

Start the worker:
    celery -A celery_worker.celery worker --loglevel=info -Q embeddings,default

Start the beat scheduler:
    celery -A celery_worker.celery beat --loglevel=info

Start both (dev only):
    celery -A celery_worker.celery worker --beat --loglevel=info -Q embeddings,default
"""

# Import the Celery app instance
from experience_hub.celery_app import celery  # noqa: F401

# Import tasks so Celery can discover them
import experience_hub.search.tasks  # noqa: F401
