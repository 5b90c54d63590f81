from .base_task import BaseTask

__all__ = ["BaseTask"]
