"""
Tests for the ExecutionCoordinator.

Runs real workflows against a LocalNodeBackend with pacing disabled.

Covers:
- Stage-by-stage execution and the status event sequence
- Port routing into backend requests
- Gating: display nodes, missing uploads, self-healed training samples,
  missing models
- Failure handling: generic node errors and authentication errors
- Cycle detection before any node runs
- Result side effects: nodeConfigurations, preview propagation,
  configuration suggestions
- stop(), reset(), concurrent start, trace persistence
"""

import asyncio

import pytest

from stageflow.backend.local import LocalNodeBackend
from stageflow.graph.edge import ConnectionSpec, WorkflowSpec
from stageflow.graph.errors import BackendError, WorkflowError
from stageflow.graph.executor import ExecutionCoordinator
from stageflow.graph.node import NodeSpec
from stageflow.graph.scheduler import PacingPolicy
from stageflow.runtime.event_bus import EventBus, ExecutionEvent, ExecutionEventType
from stageflow.schemas.run import RunStatus
from stageflow.storage.trace_store import TraceStore


def _node(node_id: str, kind: str, **data) -> NodeSpec:
    return NodeSpec(id=node_id, type=kind, data=data)


def _conn(source: str, target: str, source_port: int = 0) -> ConnectionSpec:
    return ConnectionSpec(
        id=f"{source}-{target}-{source_port}",
        source_id=source,
        target_id=target,
        source_port=source_port,
    )


class Recorder:
    """Collects bus events, node updates and backend requests."""

    def __init__(self, bus: EventBus):
        self.events: list[ExecutionEvent] = []
        self.updates: list[tuple[str, dict]] = []
        self.requests: dict[str, object] = {}
        bus.subscribe(list(ExecutionEventType), self._on_event)

    async def _on_event(self, event: ExecutionEvent) -> None:
        self.events.append(event)

    def on_node_update(self, node_id: str, data: dict) -> None:
        self.updates.append((node_id, data))

    def sequence(self) -> list[str]:
        return [
            f"{e.type}:{e.node_id}" if e.node_id else str(e.type)
            for e in self.events
        ]


@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture
def recorder(bus):
    return Recorder(bus)


@pytest.fixture
def backend(recorder):
    async def default(request):
        recorder.requests[request.node_id] = request
        return {"outputs": {"default": f"{request.node_id} done"}}

    return LocalNodeBackend(fallback=default)


@pytest.fixture
def coordinator(backend, bus, recorder):
    return ExecutionCoordinator(
        backend=backend,
        event_bus=bus,
        on_node_update=recorder.on_node_update,
        pacing=PacingPolicy(delay_seconds=0),
    )


# ---------------------------------------------------------------------------
# Happy path
# ---------------------------------------------------------------------------


class TestRun:
    @pytest.mark.asyncio
    async def test_linear_workflow(self, coordinator, recorder):
        workflow = WorkflowSpec(
            nodes=[
                _node("in", "input-node", text="tides"),
                _node("script", "script-generator"),
                _node("voice", "voice-generator"),
                _node("preview", "audio-preview-node"),
            ],
            connections=[
                _conn("in", "script"),
                _conn("script", "voice"),
                _conn("voice", "preview"),
            ],
        )

        result = await coordinator.start(workflow)

        assert result.status == RunStatus.FINISHED
        assert result.success
        assert result.executed == ["in", "script", "voice"]
        assert set(result.results) == {"in", "script", "voice"}
        assert [s.node_ids for s in result.plan.stages] == [
            ("in",),
            ("script",),
            ("voice",),
            ("preview",),
        ]
        assert recorder.sequence() == [
            "started",
            "executing:in",
            "completed:in",
            "executing:script",
            "completed:script",
            "executing:voice",
            "completed:voice",
            "finished",
        ]
        assert recorder.events[0].data == {"total_nodes": 4, "total_stages": 4}
        assert recorder.events[-1].data == {"executed": 3}
        assert coordinator.last_result is result
        assert not coordinator.is_running

    @pytest.mark.asyncio
    async def test_request_carries_routed_inputs(self, coordinator, recorder):
        await coordinator.start(
            [_node("in", "input-node", text="tides"), _node("script", "script-generator")],
            [_conn("in", "script")],
        )

        request = recorder.requests["script"]
        assert request.input_data == {"in": "in done"}
        assert request.run_id == coordinator.last_result.run_id
        assert recorder.requests["in"].payload == {"text": "tides"}

    @pytest.mark.asyncio
    async def test_named_ports_route_separately(self, coordinator, backend, recorder):
        @backend.handler("file-input-node")
        async def read_file(request):
            return {"outputs": {"script": "the script", "prompts": ["shot 1", "shot 2"]}}

        await coordinator.start(
            [
                _node("file", "file-input-node", uploadedFile={"name": "a.txt"}),
                _node("gen", "script-generator"),
            ],
            [_conn("file", "gen", 0), _conn("file", "gen", 1)],
        )

        assert recorder.requests["gen"].input_data == {
            "file": "the script",
            "file:1": ["shot 1", "shot 2"],
        }

    @pytest.mark.asyncio
    async def test_trace_spans_per_node(self, coordinator):
        result = await coordinator.start(
            [_node("a", "input-node"), _node("b", "script-generator")],
            [_conn("a", "b")],
        )
        operations = [span["operation"] for span in result.trace["spans"]]
        assert operations == ["execute-input-node", "execute-script-generator"]
        assert result.trace_summary.completed_spans == 2
        assert [s.stage for s in result.config_snapshots] == ["stage-0", "stage-1"]

    @pytest.mark.asyncio
    async def test_empty_workflow_fails(self, coordinator, recorder):
        result = await coordinator.start([])
        assert result.status == RunStatus.FAILED
        assert result.error == "No nodes to execute"
        assert recorder.sequence() == ["failed"]


# ---------------------------------------------------------------------------
# Gating
# ---------------------------------------------------------------------------


class TestGating:
    @pytest.mark.asyncio
    async def test_file_input_without_upload_is_skipped(self, coordinator, recorder):
        result = await coordinator.start(
            [_node("file", "file-input-node"), _node("gen", "script-generator")],
            [_conn("file", "gen")],
        )

        assert result.status == RunStatus.FINISHED
        assert result.skipped == {"file": "missing_uploadedFile"}
        assert result.executed == ["gen"]
        assert recorder.requests["gen"].input_data == {}
        assert "skipped:file" not in recorder.sequence()

    @pytest.mark.asyncio
    async def test_lora_without_model_signals_skip(self, coordinator, recorder):
        result = await coordinator.start([_node("lora", "lora-node")])

        assert result.status == RunStatus.FINISHED
        assert result.skipped == {"lora": "no_model_selected"}
        skipped = [e for e in recorder.events if e.type == ExecutionEventType.SKIPPED]
        assert len(skipped) == 1
        assert skipped[0].data["reason"] == "no_model_selected"
        assert "No trained LoRA model selected" in skipped[0].data["error"]
        assert "lora" not in recorder.requests

    @pytest.mark.asyncio
    async def test_training_samples_self_heal(self, coordinator, recorder):
        node = _node("train", "lora-training-node", trainingImages=[{"url": "/one.png"}])
        result = await coordinator.start([node])

        assert result.executed == ["train"]
        assert len(recorder.requests["train"].payload["trainingImages"]) == 5
        # The healed data is pushed to the update handler before execution.
        first_update = recorder.updates[0]
        assert first_update[0] == "train"
        assert len(first_update[1]["trainingImages"]) == 5
        # The caller's node spec is never mutated.
        assert node.data["trainingImages"] == [{"url": "/one.png"}]


# ---------------------------------------------------------------------------
# Failures
# ---------------------------------------------------------------------------


class TestFailures:
    @pytest.mark.asyncio
    async def test_node_failure_aborts_run(self, coordinator, backend, recorder):
        @backend.handler("ai-analysis")
        async def explode(request):
            raise RuntimeError("model overloaded")

        result = await coordinator.start(
            [
                _node("in", "input-node"),
                _node("analysis", "ai-analysis"),
                _node("after", "script-generator"),
            ],
            [_conn("in", "analysis"), _conn("analysis", "after")],
        )

        assert result.status == RunStatus.FAILED
        assert result.failed_node == "analysis"
        assert result.error == "model overloaded"
        assert result.executed == ["in"]
        assert set(result.results) == {"in"}
        assert result.node_errors == {"analysis": "model overloaded"}
        assert recorder.sequence()[-2:] == ["error:analysis", "failed"]
        assert "after" not in recorder.requests
        assert result.trace_summary.failed_spans == 1

    @pytest.mark.asyncio
    async def test_authentication_failure(self, coordinator, backend, recorder):
        @backend.handler("voice-generator")
        async def unauthorized(request):
            raise BackendError("Unauthorized", status_code=401)

        result = await coordinator.start([_node("voice", "voice-generator")])

        assert result.status == RunStatus.FAILED
        assert result.error == (
            "ElevenLabs API authentication failed. Please check your API key in Settings."
        )
        error_event = next(e for e in recorder.events if e.type == ExecutionEventType.ERROR)
        assert "ElevenLabs" in error_event.data["error"]

    @pytest.mark.asyncio
    async def test_401_without_auth_service_is_plain_failure(self, coordinator, backend):
        @backend.handler("ai-analysis")
        async def unauthorized(request):
            raise BackendError("Unauthorized", status_code=401)

        result = await coordinator.start([_node("a", "ai-analysis")])
        assert result.error == "Unauthorized"

    @pytest.mark.asyncio
    async def test_unmanaged_cycle(self, coordinator, recorder):
        result = await coordinator.start(
            [_node("A", "ai-analysis"), _node("B", "ai-analysis"), _node("C", "ai-analysis")],
            [_conn("A", "B"), _conn("B", "C"), _conn("C", "A")],
        )

        assert result.status == RunStatus.CYCLE_DETECTED
        assert result.cycle_path == ["A", "B", "C", "A"]
        assert recorder.sequence() == ["cycle_detected"]
        assert recorder.events[0].data["cyclePath"] == ["A", "B", "C", "A"]
        assert recorder.requests == {}

    @pytest.mark.asyncio
    async def test_managed_loop_runs_once(self, coordinator):
        result = await coordinator.start(
            [_node("gen", "script-generator"), _node("loop", "loop-node")],
            [_conn("gen", "loop"), _conn("loop", "gen")],
        )
        assert result.status == RunStatus.FINISHED
        assert result.executed == ["gen", "loop"]


# ---------------------------------------------------------------------------
# Result side effects
# ---------------------------------------------------------------------------


class TestResultEffects:
    @pytest.mark.asyncio
    async def test_node_configurations_push_down(self, coordinator, backend, recorder):
        @backend.handler("script-generator")
        async def plan_voices(request):
            return {
                "outputs": {"script": "hello"},
                "nodeConfigurations": {
                    "voice-generator": {"voiceId": "narrator"},
                    "not-a-kind": {"x": 1},
                },
            }

        voice = _node("voice", "voice-generator", voiceId="default")
        await coordinator.start(
            [_node("script", "script-generator"), voice],
            [_conn("script", "voice")],
        )

        assert recorder.requests["voice"].payload["voiceId"] == "narrator"
        assert ("voice", {"voiceId": "narrator"}) in recorder.updates
        assert voice.data == {"voiceId": "default"}

    @pytest.mark.asyncio
    async def test_last_result_reaches_preview(self, coordinator, recorder):
        await coordinator.start(
            [_node("img", "image-generator"), _node("view", "image-preview-node")],
            [_conn("img", "view")],
        )

        view_updates = [data for node_id, data in recorder.updates if node_id == "view"]
        assert view_updates == [{"lastResult": {"outputs": {"default": "img done"}}}]
        img_updates = [data for node_id, data in recorder.updates if node_id == "img"]
        assert img_updates[-1]["lastResult"] == {"outputs": {"default": "img done"}}

    @pytest.mark.asyncio
    async def test_config_suggestions_apply_to_later_stages(self, coordinator, backend, recorder):
        @backend.handler("script-generator")
        async def suggest(request):
            return {
                "outputs": {"script": "hello"},
                "configSuggestions": [{"path": "video.quality", "value": "hd", "priority": 60}],
            }

        result = await coordinator.start(
            [_node("script", "script-generator"), _node("video", "video-generator")],
            [_conn("script", "video")],
        )

        assert recorder.requests["video"].config == {"video": {"quality": "hd"}}
        stage_1 = result.config_snapshots[1]
        assert stage_1.applied_suggestions[0].source == "script"
        assert "config_snapshots" in result.trace

    @pytest.mark.asyncio
    async def test_base_config_reaches_every_request(self, backend, bus, recorder):
        coordinator = ExecutionCoordinator(
            backend=backend,
            event_bus=bus,
            pacing=PacingPolicy(delay_seconds=0),
            base_config={"video": {"fps": 30}},
        )
        await coordinator.start([_node("a", "input-node")])
        assert recorder.requests["a"].config == {"video": {"fps": 30}}

    @pytest.mark.asyncio
    async def test_async_update_handler_and_handler_errors(self, backend, bus, caplog):
        seen: list[str] = []

        async def on_update(node_id, data):
            seen.append(node_id)
            raise RuntimeError("canvas gone")

        coordinator = ExecutionCoordinator(
            backend=backend,
            event_bus=bus,
            on_node_update=on_update,
            pacing=PacingPolicy(delay_seconds=0),
        )
        result = await coordinator.start([_node("a", "input-node")])

        assert result.status == RunStatus.FINISHED
        assert seen == ["a"]
        assert "Node update handler failed for a" in caplog.text


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_stop_mid_run(self, coordinator, backend, recorder):
        @backend.handler("script-generator")
        async def stop_after(request):
            await coordinator.stop()
            return {"outputs": {"script": "partial"}}

        result = await coordinator.start(
            [
                _node("in", "input-node"),
                _node("script", "script-generator"),
                _node("voice", "voice-generator"),
            ],
            [_conn("in", "script"), _conn("script", "voice")],
        )

        assert result.status == RunStatus.STOPPED
        # The in-flight node finishes and keeps its result.
        assert result.executed == ["in", "script"]
        assert "voice" not in recorder.requests
        sequence = recorder.sequence()
        assert "stopped" in sequence
        assert "finished" not in sequence
        assert not coordinator.is_running

    @pytest.mark.asyncio
    async def test_stop_within_a_stage(self, coordinator, backend, recorder):
        @backend.handler("trend-research")
        async def stop_now(request):
            await coordinator.stop()
            return {"outputs": {"default": "trends"}}

        result = await coordinator.start(
            [_node("t", "trend-research"), _node("c", "content-research")]
        )

        assert result.status == RunStatus.STOPPED
        assert result.executed == ["t"]
        assert "c" not in recorder.requests

    @pytest.mark.asyncio
    async def test_stop_when_idle(self, coordinator, recorder):
        await coordinator.stop()
        assert recorder.sequence() == ["stopped"]
        assert recorder.events[0].run_id is None

    @pytest.mark.asyncio
    async def test_reset(self, coordinator, recorder):
        await coordinator.start([_node("a", "input-node")])
        assert coordinator.last_result is not None

        await coordinator.reset()

        assert coordinator.last_result is None
        assert recorder.sequence()[-1] == "reset"

    @pytest.mark.asyncio
    async def test_concurrent_start_rejected(self, coordinator, backend):
        entered = asyncio.Event()
        release = asyncio.Event()

        @backend.handler("input-node")
        async def slow(request):
            entered.set()
            await release.wait()
            return {"outputs": {"default": "ok"}}

        task = asyncio.create_task(coordinator.start([_node("a", "input-node")]))
        await entered.wait()

        assert coordinator.is_running
        assert coordinator.current_node == "a"
        assert coordinator.active_run.run_id.startswith("run_")
        with pytest.raises(WorkflowError, match="already in progress"):
            await coordinator.start([_node("b", "input-node")])

        release.set()
        result = await task
        assert result.status == RunStatus.FINISHED

    @pytest.mark.asyncio
    async def test_runs_do_not_share_state(self, coordinator, backend, recorder):
        @backend.handler("script-generator")
        async def suggest(request):
            return {"configSuggestions": [{"path": "a", "value": 1}]}

        first = await coordinator.start([_node("s", "script-generator")])
        second = await coordinator.start([_node("x", "input-node")])

        assert first.run_id != second.run_id
        assert second.results.keys() == {"x"}
        assert all(s.effective_config == {} for s in second.config_snapshots)

    @pytest.mark.asyncio
    async def test_trace_persisted(self, backend, bus, tmp_path):
        coordinator = ExecutionCoordinator(
            backend=backend,
            event_bus=bus,
            pacing=PacingPolicy(delay_seconds=0),
            trace_store=tmp_path,
        )
        result = await coordinator.start([_node("a", "input-node")])

        store = TraceStore(tmp_path)
        summary = await store.load_summary(result.run_id)
        assert summary.status == RunStatus.FINISHED
        assert summary.executed == ["a"]

        trace = await store.load_trace(result.run_id)
        assert trace["run_id"] == result.run_id
        assert len(trace["spans"]) == 1
