import pytest

from jobflow.v1.adapters.inline import InlineAdapter
from jobflow.v1.adapters.queue import QueueAdapter
from jobflow.v1.core.exceptions import UnknownJob, UnknownJobAdapter
from jobflow.v1.core.registries import (
    Registry,
    adapter_registry,
    job_registry,
)

from sample_jobs import ThreeStepJob


def test_registry_basic_operations():
    """Test basic registry register, get, list operations."""
    registry = Registry[str]("Test")

    # Test empty registry
    assert registry.list() == []

    # Test register and get
    registry.register("test_impl", "test_value")
    assert registry.get("test_impl") == "test_value"
    assert registry.list() == ["test_impl"]
    assert "test_impl" in registry

    # Test KeyError for missing implementation
    with pytest.raises(KeyError, match="No test implementation registered"):
        registry.get("nonexistent")


def test_registry_overwrites_implementation():
    """Test that registering the same name overwrites previous implementation."""
    registry = Registry[str]("Test")

    registry.register("same_name", "first_value")
    registry.register("same_name", "second_value")

    assert registry.get("same_name") == "second_value"
    assert registry.list() == ["same_name"]  # Only one entry


def test_frozen_registry_rejects_registration():
    registry = Registry[str]("Test")
    registry.register("kept", "value")
    registry.freeze()

    assert registry.is_frozen()
    with pytest.raises(RuntimeError, match="registry is frozen"):
        registry.register("late", "value")
    assert registry.get("kept") == "value"


def test_job_registry_raises_unknown_job():
    assert job_registry.get("three_step") is ThreeStepJob

    with pytest.raises(UnknownJob) as info:
        job_registry.get("no_such_job")

    assert info.value.details == {"job_name": "no_such_job"}


def test_adapters_registered(database):
    """Test that both adapters are registered against the database."""
    assert isinstance(adapter_registry.get("inline"), InlineAdapter)
    assert isinstance(adapter_registry.get("queue"), QueueAdapter)

    with pytest.raises(UnknownJobAdapter):
        adapter_registry.get("carrier-pigeon")
