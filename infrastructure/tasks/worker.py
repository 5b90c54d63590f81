"""Convenience entry point for running the refund worker.

Equivalent to ``celery -A infrastructure.tasks worker -Q payments,default``.
"""
from __future__ import annotations

from . import celery_app


def main() -> None:
    celery_app.worker_main(argv=["worker", "--loglevel=INFO", "-Q", "payments,default"])


if __name__ == "__main__":
    main()
