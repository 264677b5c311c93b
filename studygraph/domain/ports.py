from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional


class ILLMClient(ABC):
    @abstractmethod
    async def complete(
        self,
        messages: List[Dict[str, Any]],
        *,
        max_tokens: int,
        model: Optional[str] = None,
        temperature: Optional[float] = None,
        json_mode: bool = True,
    ) -> str:
        pass


class ISubjectRepository(ABC):
    """Key-value document store: one JSON-like document per subject id."""

    @abstractmethod
    async def get(self, subject_id: str) -> Optional[Dict[str, Any]]:
        pass
    @abstractmethod
    async def save(self, subject_id: str, document: Dict[str, Any]) -> None:
        pass
    @abstractmethod
    async def update_status(
        self, subject_id: str, status: str, error_message: Optional[str] = None
    ) -> None:
        pass
