import pytest
from sqlalchemy import select

from app.core import models
from app.core.config import Settings
from app.core.errors import PermanentBackendError, TransientBackendError
from app.core.generation.audit import AuditWriter, DatabaseAuditSink, build_audit_record, hash_artifacts
from app.core.generation.backends import MockBackend, MockDelay, RetryPolicy
from app.core.generation.knowledge import KnowledgeSelector, SnapshotKnowledgeStore
from app.core.generation.pipeline import (
    GenerationPipeline,
    GenerationRun,
    PipelineState,
    RequestLogger,
    build_pipeline,
)
from app.core.generation.templates import SnapshotTemplateStore, default_template_store
from app.core.schemas import GenerationStatus, InputType, IntentKind, KnowledgePriority, Product

from tests.factories import (
    VALID_CUSTOMER_LIST,
    XML_ONLY_CUSTOMER_LIST,
    RecordingSink,
    make_entry,
    make_request,
    no_sleep,
)


@pytest.mark.asyncio
async def test_customer_list_round_trip(make_pipeline, audit_sink):
    """db schema in, xml + js out, one audit record"""
    pipeline = make_pipeline()
    run = await pipeline.run(make_request())

    response = run.response
    assert response.status == GenerationStatus.SUCCESS
    assert set(response.artifacts) == {"xml", "javascript"}
    assert response.filenames["javascript"] == "customer_list.js"
    assert response.error is None
    assert response.meta.generator == "xframe5-ui-v1"
    assert run.states == [
        PipelineState.RECEIVED,
        PipelineState.NORMALIZED,
        PipelineState.KNOWLEDGE_LOADED,
        PipelineState.PROMPT_COMPILED,
        PipelineState.GENERATED,
        PipelineState.VALIDATED,
        PipelineState.SUCCESS,
    ]

    await pipeline.audit.flush()
    assert len(audit_sink.records) == 1
    record = audit_sink.records[0]
    assert record.status == GenerationStatus.SUCCESS
    assert record.intent["name"] == "customer_list"
    assert record.template_version == 1
    assert record.attempts == 1
    assert record.artifacts_hash == hash_artifacts(response.artifacts)


@pytest.mark.asyncio
async def test_prompt_contains_knowledge_and_intent(make_pipeline):
    backend = MockBackend(default=VALID_CUSTOMER_LIST)
    await make_pipeline(backend=backend).run(make_request())

    prompt = backend.prompts[0]
    assert "Reference text 1" in prompt
    assert "customer_list" in prompt
    # spring-only knowledge never reaches a screen prompt
    assert "Reference text 3" not in prompt


@pytest.mark.asyncio
async def test_missing_javascript_regenerates_once_then_partial(make_pipeline):
    backend = MockBackend(default=XML_ONLY_CUSTOMER_LIST)
    run = await make_pipeline(backend=backend).run(make_request())

    assert run.response.status == GenerationStatus.PARTIAL_SUCCESS
    assert set(run.response.artifacts) == {"xml"}
    assert any("javascript" in warning for warning in run.response.warnings)
    assert backend.calls == 2
    assert len(run.regeneration_events) == 1
    assert run.states[-3:] == [PipelineState.GENERATED, PipelineState.VALIDATED, PipelineState.PARTIAL_SUCCESS]


@pytest.mark.asyncio
async def test_regeneration_can_fix_output(make_pipeline):
    backend = MockBackend([XML_ONLY_CUSTOMER_LIST, VALID_CUSTOMER_LIST])
    run = await make_pipeline(backend=backend).run(make_request())

    assert run.response.status == GenerationStatus.SUCCESS
    assert run.response.warnings == []


@pytest.mark.asyncio
async def test_regeneration_disabled(make_pipeline):
    backend = MockBackend(default=XML_ONLY_CUSTOMER_LIST)
    run = await make_pipeline(backend=backend, regeneration_attempts=0).run(make_request())

    assert run.response.status == GenerationStatus.PARTIAL_SUCCESS
    assert backend.calls == 1


@pytest.mark.asyncio
async def test_failed_regeneration_keeps_first_output(make_pipeline):
    backend = MockBackend([XML_ONLY_CUSTOMER_LIST, PermanentBackendError("quota", reason="bad_request")])
    run = await make_pipeline(backend=backend).run(make_request())

    assert run.response.status == GenerationStatus.PARTIAL_SUCCESS
    assert set(run.response.artifacts) == {"xml"}


@pytest.mark.asyncio
async def test_two_timeouts_then_success(make_pipeline, audit_sink):
    backend = MockBackend([MockDelay(5.0, "late"), MockDelay(5.0, "late"), VALID_CUSTOMER_LIST])
    pipeline = make_pipeline(backend=backend, retry_policy=RetryPolicy(max_attempts=3, base_delay=0.01, timeout=0.05))

    run = await pipeline.run(make_request())

    assert len(run.retry_events) == 2
    assert PipelineState.VALIDATED in run.states
    assert run.response.status == GenerationStatus.SUCCESS

    await pipeline.audit.flush()
    assert audit_sink.records[0].attempts == 3


@pytest.mark.asyncio
async def test_retries_exhausted_fails_with_backend_error(make_pipeline):
    backend = MockBackend(responses=[TransientBackendError("busy")] * 3)
    run = await make_pipeline(backend=backend).run(make_request())

    assert run.response.status == GenerationStatus.FAILED
    assert run.response.error == "backend_error"
    assert run.response.artifacts == {}
    assert run.states[-2:] == [PipelineState.PROMPT_COMPILED, PipelineState.FAILED]
    assert len(run.retry_events) == 2


@pytest.mark.asyncio
async def test_unhealthy_backend_fails_before_generation(make_pipeline):
    backend = MockBackend(default=VALID_CUSTOMER_LIST, healthy=False)
    run = await make_pipeline(backend=backend).run(make_request())

    assert run.response.error == "backend_unavailable"
    assert backend.calls == 0


@pytest.mark.asyncio
async def test_normalization_error_message_is_returned(make_pipeline, audit_sink):
    request = make_request(input_data={"type": "db_schema", "table": "customer", "columns": []})
    pipeline = make_pipeline()
    run = await pipeline.run(request)

    assert run.response.status == GenerationStatus.FAILED
    assert run.response.error == "normalization_error"
    assert run.response.warnings == ["Column list is empty"]
    assert run.states == [PipelineState.RECEIVED, PipelineState.FAILED]

    await pipeline.audit.flush()
    assert audit_sink.records[0].intent is None


@pytest.mark.asyncio
async def test_normalization_message_quoting_input_stays_out_of_audit_and_logs(make_pipeline, audit_sink):
    request = make_request(
        input_data={"type": "query_sample", "query": "SELECT 'Kim 010-1234-5678' || name FROM customer"}
    )
    pipeline = make_pipeline()
    run = await pipeline.run(request)
    await pipeline.audit.flush()

    assert run.response.error == "normalization_error"
    assert "add an alias" in run.response.warnings[0]

    record = audit_sink.records[0]
    assert record.warnings == ["The request input could not be normalized"]
    assert "010-1234-5678" not in str(record.model_dump())
    assert all("010-1234-5678" not in entry["message"] for entry in run.logger.get_logs())


@pytest.mark.asyncio
async def test_missing_template_fails(knowledge_store):
    pipeline = GenerationPipeline(
        templates=SnapshotTemplateStore(),
        selector=KnowledgeSelector(knowledge_store),
        backend=MockBackend(default=VALID_CUSTOMER_LIST),
        sleep=no_sleep,
    )
    run = await pipeline.run(make_request())

    assert run.response.error == "template_not_found"
    assert "template" in run.response.warnings[0].lower()


@pytest.mark.asyncio
async def test_knowledge_unavailable_fails():
    pipeline = GenerationPipeline(
        templates=default_template_store(),
        selector=KnowledgeSelector(SnapshotKnowledgeStore()),
        backend=MockBackend(default=VALID_CUSTOMER_LIST),
        sleep=no_sleep,
    )
    run = await pipeline.run(make_request())

    assert run.response.error == "knowledge_unavailable"
    assert run.states[-1] == PipelineState.FAILED


@pytest.mark.asyncio
async def test_budget_too_small_for_any_entry_fails_before_compiling():
    backend = MockBackend(default=VALID_CUSTOMER_LIST)
    store = SnapshotKnowledgeStore([make_entry(1, {"xframe5-ui"}, KnowledgePriority.ESSENTIAL, tokens=50)])
    pipeline = GenerationPipeline(
        templates=default_template_store(),
        selector=KnowledgeSelector(store, budget=10),
        backend=backend,
        sleep=no_sleep,
    )
    run = await pipeline.run(make_request())

    assert run.response.status == GenerationStatus.FAILED
    assert run.response.error == "knowledge_unavailable"
    assert PipelineState.PROMPT_COMPILED not in run.states
    assert backend.calls == 0


class SwappingBackend(MockBackend):
    """Publishes new knowledge and a new template while its first call is in flight."""

    def __init__(self, knowledge, templates, **kwargs):
        super().__init__(**kwargs)
        self.knowledge = knowledge
        self.templates = templates

    async def generate(self, prompt, system=None):
        if self.calls == 0:
            self.knowledge.replace([make_entry(9, {"xframe5-ui"}, KnowledgePriority.ESSENTIAL)])
            current = await self.templates.get_active_template(Product.XFRAME5_UI, IntentKind.LIST)
            self.templates.publish(
                current.model_copy(update={"version": current.version + 1, "user_prompt_template": "v-next {{screen_name}}"})
            )
        return await super().generate(prompt, system=system)


@pytest.mark.asyncio
async def test_request_in_flight_keeps_one_complete_snapshot(knowledge_store):
    templates = default_template_store()
    old_version = (await templates.get_active_template(Product.XFRAME5_UI, IntentKind.LIST)).version
    backend = SwappingBackend(knowledge_store, templates, default=VALID_CUSTOMER_LIST)
    pipeline = GenerationPipeline(
        templates=templates,
        selector=KnowledgeSelector(knowledge_store),
        backend=backend,
        sleep=no_sleep,
    )

    first = await pipeline.run(make_request())

    assert first.response.status == GenerationStatus.SUCCESS
    assert sorted(first.prompt.knowledge_ids) == [1, 2]
    assert first.prompt.template_version == old_version
    assert "Reference text 9" not in backend.prompts[0]
    assert "v-next" not in backend.prompts[0]

    second = await pipeline.run(make_request())

    assert second.prompt.knowledge_ids == [9]
    assert second.prompt.template_version == old_version + 1
    assert "Reference text 9" in backend.prompts[1]
    assert "v-next customer_list" in backend.prompts[1]
    assert "Reference text 1" not in backend.prompts[1]


@pytest.mark.asyncio
async def test_natural_language_notes_never_reach_audit(make_pipeline, audit_sink):
    request = make_request(input_data={"type": "natural_language", "description": "고객 목록 화면 (secret note)"})
    pipeline = make_pipeline()
    await pipeline.run(request)
    await pipeline.audit.flush()

    record = audit_sink.records[0]
    assert record.input_type == InputType.NATURAL_LANGUAGE
    assert "notes" not in record.intent
    assert "secret note" not in str(record.model_dump())


@pytest.mark.asyncio
async def test_audit_failure_does_not_change_response(make_pipeline):
    sink = RecordingSink(fail=True)
    pipeline = make_pipeline()
    pipeline.audit = AuditWriter(sink)

    run = await pipeline.run(make_request())
    await pipeline.audit.flush()

    assert run.response.status == GenerationStatus.SUCCESS
    assert pipeline.audit.failed == 1


@pytest.mark.asyncio
async def test_audit_queue_overflow_drops_records():
    writer = AuditWriter(RecordingSink(), maxsize=1)
    record = build_audit_record(Product.XFRAME5_UI, InputType.DB_SCHEMA, GenerationStatus.FAILED)

    writer.submit(record)
    writer.submit(record)

    assert writer.dropped == 1


@pytest.mark.asyncio
async def test_audit_writer_background_task_drains_on_stop():
    sink = RecordingSink()
    writer = AuditWriter(sink)
    writer.start()
    for _ in range(3):
        writer.submit(build_audit_record(Product.XFRAME5_UI, InputType.DB_SCHEMA, GenerationStatus.SUCCESS))

    await writer.stop()

    assert len(sink.records) == 3


def test_artifacts_hash_only_when_not_retained():
    record = build_audit_record(
        Product.XFRAME5_UI,
        InputType.DB_SCHEMA,
        GenerationStatus.SUCCESS,
        artifacts={"xml": "<screen/>"},
        retain_artifacts=False,
    )

    assert record.artifacts is None
    assert record.artifacts_hash == hash_artifacts({"xml": "<screen/>"})


def test_illegal_transition_is_rejected():
    run = GenerationRun(request_id="r", logger=RequestLogger("r", "xframe5-ui"))

    with pytest.raises(RuntimeError):
        run.transition(PipelineState.GENERATED)

    run.transition(PipelineState.FAILED)
    with pytest.raises(RuntimeError):
        run.transition(PipelineState.FAILED)


@pytest.mark.asyncio
async def test_build_pipeline_wires_settings(session_factory):
    settings = Settings(LLM_PROVIDER="mock", REGENERATION_ATTEMPTS=2, KNOWLEDGE_REFRESH_SECONDS=0)
    pipeline = build_pipeline(settings, session_factory=session_factory)

    assert pipeline.regeneration_attempts == 2
    assert pipeline.selector.fallback.exists()
    assert pipeline.knowledge_cache is None
    await pipeline.aclose()
    assert pipeline.backend.closed


@pytest.mark.asyncio
async def test_build_pipeline_with_knowledge_snapshot(session_factory):
    settings = Settings(LLM_PROVIDER="mock", KNOWLEDGE_REFRESH_SECONDS=60)
    pipeline = build_pipeline(settings, session_factory=session_factory)

    await pipeline.start()
    assert pipeline.selector.primary is pipeline.knowledge_cache
    assert pipeline.knowledge_cache.snapshot == ()
    await pipeline.aclose()


@pytest.mark.asyncio
async def test_database_audit_sink_appends_row(session_factory):
    record = build_audit_record(
        Product.XFRAME5_UI,
        InputType.DB_SCHEMA,
        GenerationStatus.PARTIAL_SUCCESS,
        artifacts={"xml": "<screen/>"},
        warnings=["error: Required section 'javascript' is missing"],
        elapsed_ms=12,
        attempts=2,
    )
    await DatabaseAuditSink(session_factory).write(record)

    async with session_factory() as session:
        rows = (await session.execute(select(models.GenerationLog))).scalars().all()

    assert len(rows) == 1
    assert rows[0].status == "partial_success"
    assert rows[0].artifacts == {"xml": "<screen/>"}
    assert rows[0].generation_time_ms == 12
    assert rows[0].attempts == 2
