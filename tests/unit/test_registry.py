"""Unit tests for processor registration and turn resolution."""

from unittest.mock import MagicMock

import pytest

from src.pipeline.models import ProcessorSuccess
from src.pipeline.registry import (
    CircularDependencyError,
    ProcessorDefinition,
    ProcessorRegistry,
    RegistryError,
    UnknownDependencyError,
)
from src.processors.registration import build_default_registry


class StubProcessor(ProcessorDefinition):
    def __init__(self, name, dependencies=()):
        self.name = name
        self.dependencies = tuple(dependencies)

    def compute_hash(self, execution):
        return "hash"

    def execute(self, execution):
        return ProcessorSuccess(execution.entity_id, None)


def make_registry(graph):
    registry = ProcessorRegistry()
    for name, deps in graph.items():
        registry.register(StubProcessor(name, deps))
    return registry


def test_independent_processors_share_first_turn():
    registry = make_registry({"c": [], "a": [], "b": []})
    assert registry.resolve_execution_order() == [["a", "b", "c"]]


def test_dependencies_run_in_strictly_earlier_turns():
    registry = make_registry(
        {
            "suggest-duplicates": ["find-similar"],
            "find-similar": ["embed", "embed-messages"],
            "embed": ["summarize"],
            "embed-messages": [],
            "summarize": [],
        }
    )
    turns = registry.resolve_execution_order()
    assert turns == [
        ["embed-messages", "summarize"],
        ["embed"],
        ["find-similar"],
        ["suggest-duplicates"],
    ]

    turn_of = {name: index for index, turn in enumerate(turns) for name in turn}
    for name, deps in registry.get_dependency_graph().items():
        for dep in deps:
            assert turn_of[dep] < turn_of[name]


def test_every_processor_appears_exactly_once():
    registry = make_registry({"a": [], "b": ["a"], "c": ["a"], "d": ["b", "c"]})
    flattened = [name for turn in registry.resolve_execution_order() for name in turn]
    assert sorted(flattened) == ["a", "b", "c", "d"]
    assert len(flattened) == len(set(flattened))


def test_plan_is_independent_of_registration_order():
    first = make_registry({"a": [], "b": ["a"], "c": []})
    second = make_registry({"c": [], "b": ["a"], "a": []})
    assert first.resolve_execution_order() == second.resolve_execution_order()


def test_cycle_raises_with_stuck_processors():
    registry = make_registry({"a": ["b"], "b": ["a"], "c": []})
    with pytest.raises(CircularDependencyError) as exc_info:
        registry.resolve_execution_order()
    assert exc_info.value.processors == ["a", "b"]


def test_unknown_dependency_is_reported_before_cycles():
    registry = make_registry({"a": ["b"], "b": ["a"], "c": ["missing"]})
    with pytest.raises(UnknownDependencyError) as exc_info:
        registry.resolve_execution_order()
    assert exc_info.value.processor == "c"
    assert exc_info.value.dependency == "missing"


def test_register_replaces_existing_name():
    registry = ProcessorRegistry()
    registry.register(StubProcessor("a"))
    replacement = StubProcessor("a", ["b"])
    registry.register(replacement)
    registry.register(StubProcessor("b"))

    assert len(registry) == 2
    assert registry.get("a") is replacement
    assert registry.resolve_execution_order() == [["b"], ["a"]]


def test_register_rejects_unnamed_processor():
    with pytest.raises(RegistryError):
        ProcessorRegistry().register(StubProcessor(""))


def test_clear_and_lookup_helpers():
    registry = make_registry({"b": [], "a": ["b"]})
    assert registry.has("a")
    assert registry.names() == ["a", "b"]
    assert [p.name for p in registry.get_all()] == ["a", "b"]
    assert registry.get("zzz") is None
    registry.clear()
    assert len(registry) == 0
    assert registry.resolve_execution_order() == []


def test_idempotency_key_format():
    assert StubProcessor("embed").get_idempotency_key("t1") == "embed:t1"


def test_default_registry_plan():
    services = MagicMock()
    services.settings.max_message_chunks = 5
    services.settings.max_duplicate_candidates = 1

    registry = build_default_registry(services)
    assert registry.resolve_execution_order() == [
        ["embed-messages", "suggest-labels", "suggest-status", "summarize"],
        ["embed"],
        ["find-similar"],
        ["suggest-duplicates"],
    ]
