import asyncio
import copy
from typing import Any, Dict, Optional

import structlog

from studygraph.domain.ports import ISubjectRepository

logger = structlog.get_logger(__name__)


class SubjectNotFoundError(KeyError):
    pass


class InMemorySubjectRepository(ISubjectRepository):
    """
    Process-local key-value store of subject documents.
    Documents are deep-copied on the way in and out.
    """

    def __init__(self, initial: Optional[Dict[str, Dict[str, Any]]] = None):
        self._documents: Dict[str, Dict[str, Any]] = copy.deepcopy(initial or {})
        self._lock = asyncio.Lock()

    async def get(self, subject_id: str) -> Optional[Dict[str, Any]]:
        async with self._lock:
            document = self._documents.get(subject_id)
            return copy.deepcopy(document) if document is not None else None

    async def save(self, subject_id: str, document: Dict[str, Any]) -> None:
        async with self._lock:
            self._documents[subject_id] = copy.deepcopy(document)

    async def update_status(
        self, subject_id: str, status: str, error_message: Optional[str] = None
    ) -> None:
        async with self._lock:
            document = self._documents.get(subject_id)
            if document is None:
                raise SubjectNotFoundError(subject_id)
            document["status"] = status
            if error_message is not None:
                document["last_error"] = error_message
        logger.debug("subject_status_updated", subject_id=subject_id, status=status)
