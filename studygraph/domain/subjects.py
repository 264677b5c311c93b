from enum import Enum
from typing import Any, Dict


class SubjectStatus(str, Enum):
    EMPTY = "empty"
    PROCESSING = "processing"
    READY = "ready"
    ERROR = "error"


def new_subject_document(subject_id: str, name: str = "") -> Dict[str, Any]:
    return {
        "id": subject_id,
        "name": name,
        "status": SubjectStatus.EMPTY.value,
        "progress": 0,
        "nodes": [],
        "edges": [],
        "last_error": None,
    }
