"""Summary: Dispatchers that hand new messages to the single-message classifier.

Importance: The webhook acknowledges immediately while classification runs afterwards, with failures logged.
Alternatives: Publish message IDs to a queue such as Redis or SQS.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any, Callable

from fastapi import BackgroundTasks


logger = logging.getLogger(__name__)

ClassifyFn = Callable[[int], Any]


class ClassificationDispatcher(ABC):
    """Summary: Interface for scheduling classification of a stored message."""

    @abstractmethod
    def dispatch(self, message_id: int) -> None:
        """Summary: Schedule classification for a message ID."""


def run_classification(classify: ClassifyFn, message_id: int) -> bool:
    """Summary: Run one classification and log instead of raising.

    Importance: A failed classification leaves the message pending so the batch run retries it.
    Alternatives: Retry in-process with backoff.
    """

    try:
        classify(message_id)
    except Exception:
        logger.exception("Classification failed for message %s; left for batch retry", message_id)
        return False
    return True


class InlineDispatcher(ClassificationDispatcher):
    """Summary: Classifies immediately in the caller's thread.

    Importance: Used by the CLI and tests where there is no request lifecycle.
    Alternatives: Always defer to a background runner.
    """

    def __init__(self, classify: ClassifyFn) -> None:
        self._classify = classify

    def dispatch(self, message_id: int) -> None:
        run_classification(self._classify, message_id)


class BackgroundTaskDispatcher(ClassificationDispatcher):
    """Summary: Queues classification on FastAPI background tasks.

    Importance: Tasks run after the response is sent, so Instagram gets its 200 promptly.
    Alternatives: Spawn threads per message.
    """

    def __init__(self, background_tasks: BackgroundTasks, classify: ClassifyFn) -> None:
        self._background_tasks = background_tasks
        self._classify = classify

    def dispatch(self, message_id: int) -> None:
        self._background_tasks.add_task(run_classification, self._classify, message_id)


class RecordingDispatcher(ClassificationDispatcher):
    """Summary: Collects dispatched IDs without classifying them.

    Importance: Lets intake run without triggering LLM calls, leaving messages for the batch path.
    Alternatives: Stub the classifier.
    """

    def __init__(self) -> None:
        self.message_ids: list[int] = []

    def dispatch(self, message_id: int) -> None:
        self.message_ids.append(message_id)
