"""Typed shapes of a generated knowledge graph.

Model output is untrusted and stays plain dict/list data until the graph
assembler maps it onto these models.
"""

from __future__ import annotations

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


X_RANGE = (100.0, 900.0)
Y_RANGE = (80.0, 780.0)
MIN_LEVEL = 1
MAX_LEVEL = 5

CHAPTER_TITLE_KEY = "_chapter"
CHAPTER_INDEX_KEY = "_chapter_index"


class FormulaVariable(BaseModel):
    symbol: str
    meaning: str = ""
    unit: Optional[str] = None


class ConceptNode(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str
    title: str
    level: int = Field(..., ge=MIN_LEVEL, le=MAX_LEVEL)
    x: float = Field(..., ge=X_RANGE[0], le=X_RANGE[1])
    y: float = Field(..., ge=Y_RANGE[0], le=Y_RANGE[1])
    mastery: float = Field(default=0.0, ge=0.0, le=1.0)
    description: str = ""
    intuition: str = ""
    formula: Optional[str] = None
    variables: list[FormulaVariable] = Field(default_factory=list)
    key_points: list[str] = Field(default_factory=list, alias="keyPoints")
    common_mistakes: list[str] = Field(default_factory=list, alias="commonMistakes")
    exercises: list[dict[str, Any]] = Field(default_factory=list)


class DependencyEdge(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    source: str = Field(..., alias="from")
    target: str = Field(..., alias="to")
    strength: float = Field(default=0.5, ge=0.0, le=1.0)


class Chapter(BaseModel):
    id: str
    title: str
    topics: list[str] = Field(default_factory=list)


class DocumentStructure(BaseModel):
    subject_name: str = ""
    chapters: list[Chapter] = Field(default_factory=list)


class ChapterExtraction(BaseModel):
    """Raw, provenance-tagged output of one chapter pass."""

    concepts: list[dict[str, Any]] = Field(default_factory=list)
    internal_edges: list[dict[str, Any]] = Field(default_factory=list)


class GenerationResult(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    subject_name: str = Field(default="", alias="subjectName")
    concepts: list[ConceptNode] = Field(default_factory=list)
    edges: list[DependencyEdge] = Field(default_factory=list)

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json")
