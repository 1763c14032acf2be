"""
Celery application and pipeline tasks.
"""
