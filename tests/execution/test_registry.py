"""Tests for the component registry and built-in components."""

import pytest

from flowspine.core.errors import ReconstructionError, UnknownComponentKindError
from flowspine.core.protocols import Runtime, Sink, Source
from flowspine.execution.components import (
    FieldMapRuntime,
    LogSink,
    MemorySink,
    MemorySource,
    NullSink,
    PassthroughRuntime,
    record_cursor,
)
from flowspine.execution.registry import (
    ComponentConfig,
    ComponentRegistry,
    get_default_registry,
    register_sink,
)


class ListSink:
    def __init__(self, prefix: str = ""):
        self.prefix = prefix
        self.records = []

    def write(self, record):
        self.records.append(f"{self.prefix}{record}")


class TestComponentRegistry:
    """Tagged-variant reconstruction."""

    def test_register_and_build(self):
        registry = ComponentRegistry()
        registry.register("sink", "list", ListSink)
        sink = registry.build("sink", {"kind": "list", "prefix": ">"})
        assert isinstance(sink, ListSink)
        assert sink.prefix == ">"

    def test_build_from_envelope_model(self):
        registry = ComponentRegistry()
        registry.register("sink", "list", ListSink)
        envelope = ComponentConfig(kind="list", prefix="#")
        assert envelope.params == {"prefix": "#"}
        assert registry.build("sink", envelope).prefix == "#"

    def test_unknown_role(self):
        with pytest.raises(ValueError):
            ComponentRegistry().register("transport", "x", ListSink)

    def test_unknown_kind(self):
        registry = ComponentRegistry()
        registry.register("sink", "list", ListSink)
        with pytest.raises(UnknownComponentKindError) as exc_info:
            registry.build("sink", {"kind": "http"})
        assert exc_info.value.kind == "http"
        assert "list" in str(exc_info.value)

    def test_kind_scoped_by_role(self):
        registry = ComponentRegistry()
        registry.register("sink", "list", ListSink)
        with pytest.raises(UnknownComponentKindError):
            registry.build("source", {"kind": "list"})

    @pytest.mark.parametrize("config", [None, [], "memory", {}, {"kind": ""}])
    def test_malformed_envelope(self, config):
        with pytest.raises(ReconstructionError):
            ComponentRegistry().build("sink", config)

    def test_factory_rejects_params(self):
        registry = ComponentRegistry()
        registry.register("sink", "list", ListSink)
        with pytest.raises(ReconstructionError) as exc_info:
            registry.build("sink", {"kind": "list", "unexpected": 1})
        assert exc_info.value.context.kind == "list"

    def test_list_has_unregister(self):
        registry = ComponentRegistry()
        registry.register("sink", "list", ListSink)
        registry.register("source", "memory", MemorySource)
        assert registry.list_components() == [("sink", "list"), ("source", "memory")]
        assert registry.list_components("sink") == [("sink", "list")]
        assert registry.has("sink", "list")
        assert registry.unregister("sink", "list") is True
        assert registry.unregister("sink", "list") is False
        assert not registry.has("sink", "list")

    def test_default_registry_has_builtins(self):
        registry = get_default_registry()
        assert registry.has("source", "memory")
        for kind in ("memory", "null", "log"):
            assert registry.has("sink", kind)
        for kind in ("passthrough", "field_map"):
            assert registry.has("runtime", kind)

    def test_decorator_registration(self):
        registry = ComponentRegistry()

        @register_sink("list", registry=registry)
        class DecoratedSink(ListSink):
            """List sink registered by decorator."""

        assert isinstance(registry.build("sink", {"kind": "list"}), DecoratedSink)


class TestRecordCursor:
    def test_mapping(self):
        assert record_cursor({"id": 4}) == 4
        assert record_cursor({"seq": 9}, "seq") == 9

    def test_attribute(self):
        class Row:
            id = 7

        assert record_cursor(Row()) == 7

    def test_scalar(self):
        assert record_cursor(3) == 3

    def test_missing_key(self):
        with pytest.raises(KeyError):
            record_cursor({"name": "x"})


class TestMemorySource:
    def test_batches_after_cursor(self):
        source = MemorySource([{"id": 3}, {"id": 1}, {"id": 2}])
        assert source.next_batch(None, 2) == [{"id": 1}, {"id": 2}]
        assert source.next_batch(2, 2) == [{"id": 3}]
        assert source.next_batch(3, 2) == []

    def test_scalars(self):
        assert MemorySource([5, 6, 7]).next_batch(5, 10) == [6, 7]

    def test_missing_cursor_field(self):
        with pytest.raises(ValueError):
            MemorySource([{"name": "x"}])

    def test_protocol(self):
        assert isinstance(MemorySource(), Source)


class TestSinks:
    def test_named_memory_sink_shares_buffer(self):
        MemorySink("out").write(1)
        MemorySink("out").write(2)
        assert MemorySink.buffer("out") == [1, 2]

    def test_unnamed_memory_sink(self):
        sink = MemorySink()
        sink.write("x")
        sink.flush()
        sink.close()
        assert sink.records == ["x"]
        assert sink.flushes == 1
        assert sink.closed is True
        assert isinstance(sink, Sink)

    def test_null_sink_counts(self):
        sink = NullSink()
        sink.write(1)
        sink.write(2)
        assert sink.count == 2

    def test_log_sink_level(self):
        LogSink(level="DEBUG").write({"id": 1})
        with pytest.raises(ValueError):
            LogSink(level="critical")


class TestRuntimes:
    def test_passthrough(self):
        runtime = PassthroughRuntime(batch_size=5)
        assert runtime.transform({"id": 1}) == {"id": 1}
        assert runtime.batch_size == 5
        assert runtime.enabled is True
        assert isinstance(runtime, Runtime)

    def test_batch_size_unset_by_default(self):
        assert PassthroughRuntime().batch_size is None
        assert FieldMapRuntime({"id": "order_id"}).batch_size is None

    def test_invalid_batch_size(self):
        with pytest.raises(ValueError):
            PassthroughRuntime(batch_size=0)

    def test_field_map(self):
        runtime = FieldMapRuntime({"id": "order_id"})
        assert runtime.transform({"id": 1, "qty": 2}) == {"order_id": 1, "qty": 2}

    def test_field_map_drop_unmapped(self):
        runtime = FieldMapRuntime({"id": "order_id"}, drop_unmapped=True)
        assert runtime.transform({"id": 1, "qty": 2}) == {"order_id": 1}

    def test_field_map_rejects_scalars(self):
        with pytest.raises(TypeError):
            FieldMapRuntime({"id": "x"}).transform(5)

    def test_field_map_built_from_config(self):
        runtime = get_default_registry().build(
            "runtime", {"kind": "field_map", "mapping": {"a": "b"}, "batch_size": 10}
        )
        assert isinstance(runtime, FieldMapRuntime)
        assert runtime.batch_size == 10
