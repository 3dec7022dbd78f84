"""Background processing for generation requests."""

from pixcraft.workers.dispatcher import GenerationDispatcher, recover_interrupted_generations
from pixcraft.workers.generation_orchestrator import GenerationOrchestrator

__all__ = [
    "GenerationDispatcher",
    "GenerationOrchestrator",
    "recover_interrupted_generations",
]
