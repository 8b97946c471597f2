from .client import Completion, CompletionClient, CompletionError, TASK_SCHEMAS

__all__ = ["Completion", "CompletionClient", "CompletionError", "TASK_SCHEMAS"]
