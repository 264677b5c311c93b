from typing import Annotated

from fastapi import Depends, Request

from studygraph.infrastructure.container import GenerationContainer


def get_container(request: Request) -> GenerationContainer:
    """
    Dependency injection for the GenerationContainer.
    Pulls the instance from the app state (initialized in lifespan).
    """
    return request.app.state.container


ContainerDep = Annotated[GenerationContainer, Depends(get_container)]
