import asyncio
import random
from unittest.mock import AsyncMock, MagicMock

import aiohttp
import pytest
from pydantic import ValidationError

from journey_runner import (
    CUSTOMER_NAMES,
    CustomerProfile,
    JourneyDefinition,
    JourneyResult,
    JourneyRunner,
    ResultAggregator,
    RunConfig,
    StepDefinition,
    StepExecutor,
    StepResult,
    SubStep,
    VirtualUserContext,
    draw_customer_profile,
    generate_identifiers,
)

EXPECTED_STEP_HEADERS = [
    "X-dynaTrace",
    "x-correlation-id",
    "x-customer-id",
    "x-session-id",
    "x-trace-id",
    "x-step-name",
    "x-service-name",
    "x-customer-segment",
    "x-traffic-source",
    "x-test-iteration",
    "Content-Type",
    "User-Agent",
]


def make_cm(status: int = 200):
    resp = MagicMock()
    resp.status = status
    resp.content.read = AsyncMock(return_value=b'{"ok": true}')
    cm = AsyncMock()
    cm.__aenter__.return_value = resp
    return cm


def make_session(*statuses: int) -> MagicMock:
    session = MagicMock()
    session.closed = False
    session.close = AsyncMock()
    session.post.side_effect = [make_cm(status) for status in statuses]
    return session


def make_steps(count: int, **overrides):
    return [
        StepDefinition(
            stepNumber=i,
            stepName=f"Step{i}",
            serviceName=f"Step{i}Service",
            description=f"Step {i} description",
            estimatedDuration=overrides.get("estimatedDuration", 0),
            substeps=[SubStep(substepName=f"Sub{i}", duration=1)],
        )
        for i in range(1, count + 1)
    ]


@pytest.fixture
def journey() -> JourneyDefinition:
    return JourneyDefinition(companyName="Bt", domain="www.bt.com", steps=make_steps(3))


@pytest.fixture
def config() -> RunConfig:
    return RunConfig(target_url="http://sim.test:8080", run_seed=42, think_time_scale=0)


@pytest.fixture
def context() -> VirtualUserContext:
    profile = CustomerProfile(name="Sarah Johnson", email="sarah.johnson@email.com", segment="Premium")
    ids = generate_identifiers(1, 1, 1738747165, "Bt_LoadTest_20260205", "BizObs_Bt_www.bt.com_Journey")
    return VirtualUserContext.for_iteration(1, 1, profile, "Google_Ads", ids)


def make_executor(config: RunConfig, journey: JourneyDefinition, aggregator: ResultAggregator = None) -> StepExecutor:
    return StepExecutor(
        config,
        journey,
        aggregator or ResultAggregator(),
        run_label="Bt_LoadTest_20260205",
        journey_label="BizObs_Bt_www.bt.com_Journey",
    )


# ---------------------------
# Identifiers
# ---------------------------
def test_generate_identifiers_formats():
    ids = generate_identifiers(3, 2, 1738747165, "Bt_LoadTest_20260205", "BizObs_Bt_www.bt.com_Journey")
    assert ids.correlation_id == "LR_Bt_LoadTest_20260205_3_2_1738747165"
    assert ids.customer_id == "customer_3_2_7165"
    assert ids.session_id == "session_BizObs_Bt_www.bt.com_Journey_3_2"
    assert ids.trace_id == "trace_LR_Bt_LoadTest_20260205_3_2_1738747165_1738747165"


def test_identifiers_unique_across_workers_and_iterations():
    correlation_ids = set()
    trace_ids = set()
    for worker_id in range(1, 11):
        for iteration in range(1, 11):
            ids = generate_identifiers(worker_id, iteration, 1700000000, "LTN", "LSN")
            correlation_ids.add(ids.correlation_id)
            trace_ids.add(ids.trace_id)
    assert len(correlation_ids) == 100
    assert len(trace_ids) == 100


def test_context_is_rebuilt_per_iteration(context):
    ids = generate_identifiers(1, 2, 1738747170, "LTN", "LSN")
    nxt = VirtualUserContext.for_iteration(1, 2, context.customer_profile, context.traffic_source, ids)
    assert nxt.customer_profile == context.customer_profile
    assert nxt.traffic_source == context.traffic_source
    assert nxt.correlation_id != context.correlation_id
    with pytest.raises(ValidationError):
        context.iteration = 5


# ---------------------------
# Request building
# ---------------------------
def test_tracing_header_field_order(config, journey, context):
    executor = make_executor(config, journey)
    assert executor.build_tracing_header("Step1", context) == (
        "TSN=Step1;LSN=BizObs_Bt_www.bt.com_Journey;LTN=Bt_LoadTest_20260205;VU=1;"
        "SI=LoadRunner;PC=BizObs-Demo;AN=Bt;CID=LR_Bt_LoadTest_20260205_1_1_1738747165"
    )


def test_step_headers_and_payload(config, journey, context):
    executor = make_executor(config, journey)
    step = journey.steps[1]
    headers = executor.build_step_headers(step, context)
    assert list(headers) == EXPECTED_STEP_HEADERS
    assert headers["x-step-name"] == "Step2"
    assert headers["x-service-name"] == "Step2Service"
    assert headers["x-customer-segment"] == "Premium"
    assert headers["x-traffic-source"] == "Google_Ads"
    assert headers["x-test-iteration"] == "1"
    assert headers["User-Agent"] == "LoadRunner-BizObs-Agent/1.0"

    payload = executor.build_step_payload(step, context)
    assert payload["journeyId"] == context.correlation_id
    assert payload["chained"] is True
    assert payload["thinkTimeMs"] == 250
    assert payload["errorSimulationEnabled"] is False
    assert payload["journey"]["companyName"] == "Bt"
    assert payload["journey"]["domain"] == "www.bt.com"
    assert [s["stepName"] for s in payload["journey"]["steps"]] == ["Step2"]
    assert payload["journey"]["steps"][0]["substeps"] == [{"substepName": "Sub2", "duration": 1}]
    assert payload["journey"]["customerProfile"]["userId"] == context.customer_id
    assert payload["journey"]["customerProfile"]["email"] == "sarah.johnson@email.com"


def test_completion_payload(config, journey, context):
    executor = make_executor(config, journey)
    headers = executor.build_completion_headers(context)
    assert headers["X-dynaTrace"].startswith("TSN=Journey_Completion;")
    assert headers["x-correlation-id"] == context.correlation_id
    payload = executor.build_completion_payload(context)
    assert payload["eventType"] == "journey_completed"
    assert payload["totalSteps"] == 3
    assert payload["loadTest"] is True
    assert payload["customerName"] == "Sarah Johnson"
    assert payload["customerSegment"] == "Premium"


# ---------------------------
# Step execution
# ---------------------------
@pytest.mark.asyncio
@pytest.mark.parametrize(
    "status, outcome",
    [(200, "Pass"), (399, "Pass"), (400, "Fail"), (500, "Fail"), (503, "Fail")],
)
async def test_execute_classifies_status(status, outcome, config, journey, context):
    aggregator = ResultAggregator()
    executor = make_executor(config, journey, aggregator)
    session = make_session(status)

    result = await executor.execute(session, journey.steps[0], context)

    assert result.outcome == outcome
    assert result.http_status == status
    assert result.duration_ms >= 0
    if outcome == "Fail":
        assert result.failure_kind == "application"
    else:
        assert result.failure_kind is None
    assert aggregator.requests_total == 1
    called_url = session.post.call_args.args[0]
    assert called_url == "http://sim.test:8080/api/journey-simulation/simulate-journey"


@pytest.mark.asyncio
async def test_headers_do_not_leak_between_steps(config, journey, context):
    executor = make_executor(config, journey)
    session = make_session(200, 200)

    await executor.execute(session, journey.steps[0], context)
    await executor.execute(session, journey.steps[1], context)

    first_headers = session.post.call_args_list[0].kwargs["headers"]
    second_headers = session.post.call_args_list[1].kwargs["headers"]
    assert first_headers["x-step-name"] == "Step1"
    assert second_headers["x-step-name"] == "Step2"
    assert "TSN=Step1;" not in second_headers["X-dynaTrace"]
    assert first_headers is not second_headers
    assert session.cookie_jar.clear.call_count == 2


@pytest.mark.asyncio
async def test_execute_transport_failure_after_retries(monkeypatch, journey, context):
    cfg = RunConfig(target_url="http://sim.test", max_retries=2, think_time_scale=0)
    aggregator = ResultAggregator()
    executor = make_executor(cfg, journey, aggregator)
    session = MagicMock()
    session.post.side_effect = aiohttp.ClientConnectionError("connection refused")
    sleep_mock = AsyncMock()
    monkeypatch.setattr(asyncio, "sleep", sleep_mock)

    result = await executor.execute(session, journey.steps[0], context)

    assert result.outcome == "Fail"
    assert result.failure_kind == "transport"
    assert result.http_status is None
    assert "connection refused" in result.error
    assert session.post.call_count == 3
    assert [c.args[0] for c in sleep_mock.await_args_list] == [0.5, 1.0]
    assert aggregator.requests_total == 0
    session.cookie_jar.clear.assert_called_once()


@pytest.mark.asyncio
async def test_execute_retries_timeout_then_succeeds(monkeypatch, config, journey, context):
    executor = make_executor(config, journey)
    session = MagicMock()
    session.post.side_effect = [asyncio.TimeoutError(), make_cm(200)]
    monkeypatch.setattr(asyncio, "sleep", AsyncMock())

    result = await executor.execute(session, journey.steps[0], context)

    assert result.outcome == "Pass"
    assert session.post.call_count == 2


@pytest.mark.asyncio
async def test_status_codes_are_not_retried(config, journey, context):
    executor = make_executor(config, journey)
    session = make_session(503)
    result = await executor.execute(session, journey.steps[0], context)
    assert result.outcome == "Fail"
    assert session.post.call_count == 1


@pytest.mark.asyncio
async def test_think_time_is_fixed_per_step(monkeypatch, context):
    cfg = RunConfig(target_url="http://sim.test", default_think_time_ms=2000)
    steps = [
        StepDefinition(stepNumber=1, stepName="A", serviceName="AService", estimatedDuration=2000),
        StepDefinition(stepNumber=2, stepName="B", serviceName="BService", estimatedDuration=2000, thinkTimeMs=300),
    ]
    journey = JourneyDefinition(companyName="Bt", domain="www.bt.com", steps=steps)
    executor = make_executor(cfg, journey)
    sleep_mock = AsyncMock()
    monkeypatch.setattr(asyncio, "sleep", sleep_mock)

    session = make_session(200, 200)
    await executor.execute(session, steps[0], context)
    await executor.execute(session, steps[1], context)

    assert [c.args[0] for c in sleep_mock.await_args_list] == [2.0, 0.3]


def test_think_time_scale_and_cap(journey):
    step = StepDefinition(stepNumber=1, stepName="A", serviceName="AService", thinkTimeMs=1440000)
    scaled = make_executor(RunConfig(target_url="http://sim.test", think_time_scale=0.5), journey)
    assert scaled.think_time_for(step) == 720.0
    capped = make_executor(RunConfig(target_url="http://sim.test", max_think_time_s=5), journey)
    assert capped.think_time_for(step) == 5


def test_think_time_defaults_to_five_seconds_not_estimated_duration(journey):
    step = StepDefinition(stepNumber=1, stepName="A", serviceName="AService", estimatedDuration=4)
    executor = make_executor(RunConfig(target_url="http://sim.test"), journey)
    assert executor.think_time_for(step) == 5.0
    custom = make_executor(RunConfig(target_url="http://sim.test", **{"Default Think Time MS": 1500}), journey)
    assert custom.think_time_for(step) == 1.5


# ---------------------------
# Journey orchestration
# ---------------------------
@pytest.mark.asyncio
async def test_run_iteration_runs_all_steps_in_order_despite_failure(config, journey, context):
    runner = JourneyRunner(config, journey)
    session = make_session(200, 500, 200)

    result = await runner.run_iteration(session, context)

    step_names = [c.kwargs["headers"]["x-step-name"] for c in session.post.call_args_list]
    assert step_names == ["Step1", "Step2", "Step3"]
    assert [s.step_number for s in result.steps] == [1, 2, 3]
    assert [s.outcome for s in result.steps] == ["Pass", "Fail", "Pass"]
    assert result.outcome == "Fail"
    assert result.correlation_id == context.correlation_id
    assert result.total_duration_ms >= sum(s.duration_ms for s in result.steps)
    correlation_ids = {c.kwargs["headers"]["x-correlation-id"] for c in session.post.call_args_list}
    assert correlation_ids == {context.correlation_id}


@pytest.mark.asyncio
async def test_run_records_every_journey_and_completion_event(journey):
    cfg = RunConfig(target_url="http://sim.test", virtual_users=2, iterations=2, run_seed=7, think_time_scale=0)
    runner = JourneyRunner(cfg, journey)
    session = MagicMock()
    session.closed = False
    session.close = AsyncMock()
    session.post.side_effect = lambda *args, **kwargs: make_cm(200)
    runner.create_session = lambda: session

    summary = await runner.run()

    assert summary.journeys.count == 4
    assert summary.journeys.passed == 4
    assert summary.completion_events_sent == 4
    assert summary.steps["Step1"].count == 4
    # 3 steps + 1 completion event per journey
    assert session.post.call_count == 16
    step_calls = [c for c in session.post.call_args_list if "x-step-name" in c.kwargs["headers"]]
    correlation_ids = {c.kwargs["headers"]["x-correlation-id"] for c in step_calls}
    assert len(correlation_ids) == 4
    assert runner.get_active_user_count() == 0
    assert session.close.await_count == 2


@pytest.mark.asyncio
async def test_completion_event_failure_does_not_change_outcome(journey):
    cfg = RunConfig(target_url="http://sim.test", run_seed=1, think_time_scale=0, max_retries=0)
    runner = JourneyRunner(cfg, journey)
    session = make_session(200, 200, 200, 500)
    runner.create_session = lambda: session

    summary = await runner.run()

    assert summary.journeys.passed == 1
    assert summary.journeys.failed == 0
    assert summary.completion_events_sent == 0
    assert summary.completion_events_failed == 1
    completion_body = session.post.call_args_list[3].kwargs["json"]
    assert completion_body["eventType"] == "journey_completed"


@pytest.mark.asyncio
async def test_completion_event_can_be_disabled(journey):
    cfg = RunConfig(target_url="http://sim.test", think_time_scale=0, send_completion_event=False)
    runner = JourneyRunner(cfg, journey)
    session = make_session(200, 200, 200)
    runner.create_session = lambda: session

    summary = await runner.run()

    assert session.post.call_count == 3
    assert summary.completion_events_sent == 0


@pytest.mark.asyncio
async def test_stop_mid_step_discards_partial_iteration(journey):
    cfg = RunConfig(target_url="http://sim.test", iterations=None, think_time_scale=0)
    runner = JourneyRunner(cfg, journey)

    async def hang(*args, **kwargs):
        await asyncio.Event().wait()

    hanging_cm = AsyncMock()
    hanging_cm.__aenter__.side_effect = hang
    session = MagicMock()
    session.closed = False
    session.close = AsyncMock()
    # step 1 completes, step 2 never answers
    session.post.side_effect = [make_cm(200), hanging_cm]
    runner.create_session = lambda: session

    run_task = asyncio.create_task(runner.run())
    for _ in range(200):
        if session.post.call_count >= 2:
            break
        await asyncio.sleep(0.01)
    assert session.post.call_count == 2

    await asyncio.wait_for(runner.stop(), timeout=2)
    summary = await asyncio.wait_for(run_task, timeout=2)

    assert summary.journeys.count == 0
    assert summary.steps == {}
    assert runner.running is False
    session.close.assert_awaited_once()


@pytest.mark.asyncio
async def test_duration_limit_stops_continuous_run(journey):
    cfg = RunConfig(
        target_url="http://sim.test", iterations=None, duration_s=0.2,
        journey_interval_ms=10, think_time_scale=0, send_completion_event=False,
    )
    runner = JourneyRunner(cfg, journey)
    session = MagicMock()
    session.closed = False
    session.close = AsyncMock()
    session.post.side_effect = lambda *args, **kwargs: make_cm(200)
    runner.create_session = lambda: session

    summary = await asyncio.wait_for(runner.run(), timeout=5)

    assert summary.journeys.count >= 1
    assert summary.journeys.failed == 0
    assert runner.get_active_user_count() == 0


@pytest.mark.asyncio
async def test_stop_flag_prevents_iterations(tmp_path, journey):
    flag = tmp_path / "STOP_ALL"
    flag.write_text("")
    cfg = RunConfig(target_url="http://sim.test", iterations=None, stop_flag_paths=[str(flag)])
    runner = JourneyRunner(cfg, journey)
    session = make_session()
    runner.create_session = lambda: session

    summary = await asyncio.wait_for(runner.run(), timeout=5)

    assert summary.journeys.count == 0
    session.post.assert_not_called()


# ---------------------------
# Virtual user profiles & labels
# ---------------------------
def test_worker_profiles_are_reproducible_per_seed(config, journey):
    first = JourneyRunner(config, journey)
    second = JourneyRunner(config, journey)
    for worker_id in range(1, 6):
        assert draw_customer_profile(first.worker_random(worker_id)) == draw_customer_profile(second.worker_random(worker_id))


def test_profile_draw_pairs_name_and_email():
    rng = random.Random(3)
    for _ in range(50):
        profile = draw_customer_profile(rng)
        assert profile.name in CUSTOMER_NAMES
        assert profile.email == profile.name.lower().replace(" ", ".") + "@email.com"
        assert profile.deviceType == "desktop"
        assert profile.location == "US-East"


def test_default_labels(journey):
    runner = JourneyRunner(RunConfig(target_url="http://sim.test"), journey)
    assert runner.journey_label == "BizObs_Bt_www.bt.com_Journey"
    assert runner.run_label.startswith("Bt_LoadTest_")
    labelled = JourneyRunner(RunConfig(target_url="http://sim.test", run_label="Custom"), journey)
    assert labelled.run_label == "Custom"


# ---------------------------
# Validation
# ---------------------------
def test_run_config_defaults_and_aliases():
    cfg = RunConfig.model_validate({"Target URL": "http://sim.test/", "Virtual Users": 3})
    assert cfg.target_url == "http://sim.test"
    assert cfg.virtual_users == 3
    assert cfg.iterations == 1
    assert cfg.max_retries == 3
    assert cfg.receive_timeout_s == 30
    assert cfg.max_body_bytes == 1_024_000


@pytest.mark.parametrize(
    "overrides",
    [
        {"target_url": "localhost:8080"},
        {"target_url": "http://sim.test", "virtual_users": 0},
        {"target_url": "http://sim.test", "iterations": 0},
        {"target_url": "http://sim.test", "max_retries": -1},
    ],
)
def test_run_config_rejects_invalid_values(overrides):
    with pytest.raises(ValidationError):
        RunConfig(**overrides)


def test_journey_requires_ordered_steps():
    steps = make_steps(3)
    with pytest.raises(ValidationError):
        JourneyDefinition(companyName="Bt", domain="www.bt.com", steps=[steps[0], steps[2]])
    with pytest.raises(ValidationError):
        JourneyDefinition(companyName="Bt", domain="www.bt.com", steps=[])


def test_step_accepts_step_index_alias():
    step = StepDefinition.model_validate(
        {"stepIndex": 1, "stepName": "PlanSelection", "serviceName": "PlanSelectionService", "category": "Consideration"}
    )
    assert step.stepNumber == 1
    assert step.description == ""
    assert step.substeps == []


# ---------------------------
# Aggregation
# ---------------------------
def _journey_result(worker_id: int, durations, statuses) -> JourneyResult:
    steps = [
        StepResult(
            step_number=i,
            step_name=f"Step{i}",
            service_name=f"Step{i}Service",
            http_status=status,
            duration_ms=duration,
            outcome="Pass" if status < 400 else "Fail",
            failure_kind=None if status < 400 else "application",
        )
        for i, (duration, status) in enumerate(zip(durations, statuses), start=1)
    ]
    return JourneyResult(
        worker_id=worker_id,
        iteration=1,
        correlation_id=f"LR_x_{worker_id}_1_0",
        total_duration_ms=sum(durations) + 5,
        steps=steps,
    )


@pytest.mark.asyncio
async def test_aggregator_snapshot():
    aggregator = ResultAggregator()
    await asyncio.gather(
        aggregator.record_journey(_journey_result(1, [10.0, 20.0], [200, 200])),
        aggregator.record_journey(_journey_result(2, [30.0, 40.0], [200, 503])),
    )
    await aggregator.record_completion_event(True)
    await aggregator.record_completion_event(False)

    summary = await aggregator.snapshot()

    assert summary.journeys.count == 2
    assert summary.journeys.passed == 1
    assert summary.journeys.failed == 1
    assert summary.journeys.min_ms == 35.0
    assert summary.journeys.max_ms == 75.0
    assert summary.steps["Step1"].avg_ms == 20.0
    assert summary.steps["Step2"].failed == 1
    assert summary.steps["Step2"].p95_ms == 40.0
    assert summary.completion_events_sent == 1
    assert summary.completion_events_failed == 1


def test_journey_result_outcome_is_serialized():
    result = _journey_result(1, [1.0], [500])
    assert result.model_dump()["outcome"] == "Fail"
