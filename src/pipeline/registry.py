"""Processor definitions and the dependency-aware registry.

A processor is a named, hashable unit of per-thread work. The registry holds
processor definitions and resolves them into turns: each turn is every
not-yet-scheduled processor whose dependencies were all scheduled in earlier
turns, so processors within a turn can run side by side.

Registries are plain instances passed to the orchestrator; build the
standard one with ``src.processors.registration.build_default_registry``.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple

from src.pipeline.context import JobContext
from src.pipeline.models import ProcessorResult
from src.threads.models import Thread

logger = logging.getLogger(__name__)


class RegistryError(Exception):
    """Base exception for processor registry errors."""

    pass


class UnknownDependencyError(RegistryError):
    """A processor depends on a name that is not registered."""

    def __init__(self, processor: str, dependency: str):
        self.processor = processor
        self.dependency = dependency
        super().__init__(f"Processor '{processor}' depends on unknown processor '{dependency}'")


class CircularDependencyError(RegistryError):
    """The dependency graph has a cycle among the listed processors."""

    def __init__(self, processors: Sequence[str]):
        self.processors = list(processors)
        super().__init__(f"Circular dependency detected among processors: {', '.join(self.processors)}")


@dataclass(frozen=True)
class ProcessorExecution:
    """Everything a processor sees for one thread."""

    context: JobContext
    thread: Thread
    entity_id: str


class ProcessorDefinition(ABC):
    """Base class for pipeline processors.

    Subclasses set ``name`` and ``dependencies`` and implement
    ``compute_hash`` and ``execute``. ``compute_hash`` must digest every input
    the output depends on; an unchanged hash lets the orchestrator skip work.
    """

    name: str = ""
    dependencies: Tuple[str, ...] = ()

    def get_idempotency_key(self, entity_id: str) -> str:
        return f"{self.name}:{entity_id}"

    @abstractmethod
    def compute_hash(self, execution: ProcessorExecution) -> str:
        raise NotImplementedError

    @abstractmethod
    def execute(self, execution: ProcessorExecution) -> ProcessorResult:
        raise NotImplementedError

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self.name!r}, dependencies={list(self.dependencies)!r})"


class ProcessorRegistry:
    def __init__(self) -> None:
        self._processors: Dict[str, ProcessorDefinition] = {}

    def register(self, definition: ProcessorDefinition) -> None:
        """Add a processor, replacing any previous one with the same name."""
        if not definition.name:
            raise RegistryError(f"Processor {definition!r} has no name")
        if definition.name in self._processors:
            logger.warning(
                "Replacing registered processor",
                extra={"processor": definition.name},
            )
        self._processors[definition.name] = definition

    def get(self, name: str) -> Optional[ProcessorDefinition]:
        return self._processors.get(name)

    def has(self, name: str) -> bool:
        return name in self._processors

    def names(self) -> List[str]:
        return sorted(self._processors)

    def get_all(self) -> List[ProcessorDefinition]:
        return [self._processors[name] for name in self.names()]

    def get_dependency_graph(self) -> Dict[str, List[str]]:
        return {name: list(self._processors[name].dependencies) for name in self.names()}

    def clear(self) -> None:
        self._processors.clear()

    def __len__(self) -> int:
        return len(self._processors)

    def resolve_execution_order(self) -> List[List[str]]:
        """Group processors into dependency-ordered turns.

        Returns:
            Turns in execution order; names within a turn are sorted.

        Raises:
            UnknownDependencyError: A dependency is not registered (checked first).
            CircularDependencyError: Some processors can never be scheduled.
        """
        for name in self.names():
            for dependency in self._processors[name].dependencies:
                if dependency not in self._processors:
                    raise UnknownDependencyError(name, dependency)

        scheduled = set()
        remaining = set(self._processors)
        turns: List[List[str]] = []

        while remaining:
            turn = sorted(
                name
                for name in remaining
                if all(dep in scheduled for dep in self._processors[name].dependencies)
            )
            if not turn:
                raise CircularDependencyError(sorted(remaining))
            turns.append(turn)
            scheduled.update(turn)
            remaining.difference_update(turn)

        return turns
