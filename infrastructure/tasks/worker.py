"""Convenience entry point for running a Celery worker with beat embedded.

Production deployments should run ``celery -A infrastructure.tasks worker``
and a separate ``celery -A infrastructure.tasks beat``.
"""
from __future__ import annotations

from .config.celery import celery_app


def main() -> None:
    celery_app.worker_main(argv=["worker", "--beat", "--loglevel=INFO", "-Q", "high,default,low"])


if __name__ == "__main__":
    main()
