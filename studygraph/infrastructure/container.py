"""
Generation Container - studygraph Infrastructure Layer

Centralizes service instantiation and dependency injection.
"""

from typing import Optional

from studygraph.application.services.knowledge_graph_pipeline import KnowledgeGraphPipeline
from studygraph.application.use_cases.generate_subject_graph_use_case import (
    GenerateSubjectGraphUseCase,
)
from studygraph.domain.ports import ILLMClient, ISubjectRepository
from studygraph.infrastructure.ai.llm_proxy_client import LLMProxyClient
from studygraph.infrastructure.repositories.in_memory_subject_repository import (
    InMemorySubjectRepository,
)
from studygraph.infrastructure.state_management.generation_registry import GenerationRegistry


class GenerationContainer:
    """
    IoC Container for generation services.
    Collaborators can be injected up front; anything missing is built lazily.
    """

    def __init__(
        self,
        llm_client: Optional[ILLMClient] = None,
        subject_repository: Optional[ISubjectRepository] = None,
        pipeline: Optional[KnowledgeGraphPipeline] = None,
    ):
        self._llm_client = llm_client
        self._subject_repository = subject_repository
        self._pipeline = pipeline
        self._generation_registry: Optional[GenerationRegistry] = None
        self._generate_use_case: Optional[GenerateSubjectGraphUseCase] = None

    @property
    def llm_client(self) -> ILLMClient:
        if self._llm_client is None:
            self._llm_client = LLMProxyClient()
        return self._llm_client

    @property
    def subject_repository(self) -> ISubjectRepository:
        if self._subject_repository is None:
            self._subject_repository = InMemorySubjectRepository()
        return self._subject_repository

    @property
    def pipeline(self) -> KnowledgeGraphPipeline:
        if self._pipeline is None:
            self._pipeline = KnowledgeGraphPipeline(self.llm_client)
        return self._pipeline

    @property
    def generation_registry(self) -> GenerationRegistry:
        if self._generation_registry is None:
            self._generation_registry = GenerationRegistry()
        return self._generation_registry

    @property
    def generate_subject_graph_use_case(self) -> GenerateSubjectGraphUseCase:
        if self._generate_use_case is None:
            self._generate_use_case = GenerateSubjectGraphUseCase(
                self.pipeline, self.subject_repository
            )
        return self._generate_use_case

    async def aclose(self) -> None:
        close = getattr(self._llm_client, "aclose", None)
        if close is not None:
            await close()
